"""
Excel export module for walkthrough results.

Exports a multi-sheet workbook: one sheet per (method, factor) result table,
the long comparison table, the hit summary, method agreement and a Settings
sheet with the configuration, library versions and method status.
"""

from typing import Dict, List
from datetime import datetime
from pathlib import Path
import re
import sys
import pandas as pd
import numpy as np
import plotly.graph_objects as go
from de_pipeline import WalkthroughResult


class ExportEngine:
    """Excel / HTML export engine for walkthrough results."""

    def sanitize_sheet_name(self, name: str, max_length: int = 31) -> str:
        """
        Sanitize sheet name for Excel compatibility.

        Excel sheet name rules:
        - Max 31 characters
        - Cannot contain: [ ] : * ? / \\
        - Cannot start or end with '

        Args:
            name: Raw sheet name
            max_length: Maximum length (default 31 for Excel)

        Returns:
            Sanitized sheet name
        """
        name = re.sub(r"[\[\]:*?/\\]", "_", name)
        name = name.strip("'")
        return name[:max_length]

    def _unique_sheet_name(self, name: str, used: set) -> str:
        base = self.sanitize_sheet_name(name)
        candidate, i = base, 2
        while candidate.lower() in used:
            suffix = f"~{i}"
            candidate = base[: 31 - len(suffix)] + suffix
            i += 1
        used.add(candidate.lower())
        return candidate

    def export_excel(self, filepath, result: WalkthroughResult) -> None:
        """
        Export walkthrough results to a multi-sheet Excel workbook.

        Sheet layout:
        - {method}_{factor} for every successful result table
        - Comparison, Hit Summary, Agreement
        - Settings

        Args:
            filepath: Output path (.xlsx) or a writable binary buffer
            result: Output of DEWalkthrough.run()
        """
        used: set = set()
        with pd.ExcelWriter(filepath, engine="openpyxl") as writer:
            for (method, factor), de_result in result.de_results.items():
                if de_result.failed:
                    continue
                sheet = self._unique_sheet_name(f"{method}_{factor}", used)
                de_result.results_df.sort_values("pvalue").to_excel(writer, sheet_name=sheet, index=False)

            if not result.comparison.empty:
                result.comparison.to_excel(
                    writer, sheet_name=self._unique_sheet_name("Comparison", used), index=False
                )
            if not result.hit_summary.empty:
                result.hit_summary.to_excel(writer, sheet_name=self._unique_sheet_name("Hit Summary", used))
            if not result.agreement.empty:
                result.agreement.to_excel(
                    writer, sheet_name=self._unique_sheet_name("Agreement", used), index=False
                )
            for factor, corr in result.correlations.items():
                corr.to_excel(writer, sheet_name=self._unique_sheet_name(f"Correlation_{factor}", used))

            result.design.matrix.to_excel(writer, sheet_name=self._unique_sheet_name("Design", used))
            self._write_settings_sheet(writer, result)

    def _versions(self) -> List[List[str]]:
        rows = [["Python Version", f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"]]
        import scipy
        import statsmodels
        rows += [
            ["NumPy Version", np.__version__],
            ["pandas Version", pd.__version__],
            ["SciPy Version", scipy.__version__],
            ["statsmodels Version", statsmodels.__version__],
        ]
        try:
            import pydeseq2

            rows.append(["PyDESeq2 Version", pydeseq2.__version__])
        except (ImportError, AttributeError):
            rows.append(["PyDESeq2 Version", "N/A"])
        return rows

    def _write_settings_sheet(self, writer: pd.ExcelWriter, result: WalkthroughResult) -> None:
        """
        Write Settings sheet with analysis metadata.

        Key-value rows with sections:
        - Analysis date and library versions
        - Configuration values
        - Dataset size before/after filtering
        - Method status per (method, factor)
        - Normalization factors per sample
        """
        settings_data = [
            ["Parameter", "Value"],
            ["Analysis Date", datetime.now().strftime("%Y-%m-%d %H:%M:%S")],
        ]
        settings_data += self._versions()

        settings_data.append(["---", "---"])
        settings_data.append(["Configuration", ""])
        for key, value in result.config.to_dict().items():
            settings_data.append([key, "" if value is None else str(value)])

        settings_data.append(["---", "---"])
        settings_data.append(["Dataset", ""])
        settings_data.append(["Genes (raw)", str(result.raw.n_genes)])
        settings_data.append(["Genes (filtered)", str(result.filtered.n_genes)])
        settings_data.append(["Samples", str(result.filtered.n_samples)])
        settings_data.append(["Design", result.design.formula])

        settings_data.append(["---", "---"])
        settings_data.append(["Methods", ""])
        for (method, factor), de_result in result.de_results.items():
            if de_result.failed:
                status = f"FAILED ({de_result.warnings[0] if de_result.warnings else 'no results'})"
            else:
                status = f"SUCCESS ({de_result.test}, {de_result.n_significant} significant genes)"
            settings_data.append([f"{method} / {factor}", status])

        settings_data.append(["---", "---"])
        settings_data.append(["Normalization Factors", ""])
        for sample, nf in result.filtered.norm_factors.items():
            settings_data.append([str(sample), f"{nf:.4f}"])

        pd.DataFrame(settings_data).to_excel(writer, sheet_name="Settings", index=False, header=False)

    def export_figures_html(self, directory, figures: Dict[str, go.Figure]) -> List[Path]:
        """
        Write each figure as a standalone interactive HTML file.

        Returns:
            Paths written, in figure order
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        paths = []
        for name, fig in figures.items():
            path = directory / f"{re.sub(r'[^A-Za-z0-9_.-]', '_', name)}.html"
            fig.write_html(str(path), include_plotlyjs="cdn")
            paths.append(path)
        return paths
