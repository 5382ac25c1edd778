"""
RNA-seq Differential Expression Walkthrough
A Streamlit report comparing five differential expression methods on one dataset.

Run with:  streamlit run rnaseq_de_walkthrough.py
"""

import io
import logging
import streamlit as st

from analysis_config import AnalysisConfig, ConfigError, DEFAULT_METHODS, KNOWN_METHODS, load_config
from count_data import DataValidationError
from design import DesignError
from method_comparison import ComparisonError, top_genes
from de_analysis import DEMethod
from de_pipeline import DEWalkthrough
from demo_data import get_demo_description
from export_engine import ExportEngine
from visualizations import create_volcano_plot, create_gene_expression_plot

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

# --- Page Config ---
st.set_page_config(
    page_title="RNA-seq DE Walkthrough",
    page_icon="🧬",
    layout="wide",
    initial_sidebar_state="expanded",
)

# --- Session State Initialization ---
for key, default in [("result", None), ("figures", {}), ("walkthrough", None)]:
    if key not in st.session_state:
        st.session_state[key] = default


def _base_config() -> AnalysisConfig:
    try:
        return load_config()
    except FileNotFoundError:
        return AnalysisConfig()


def _level_badge(level: str) -> str:
    return {"critical": "🔴", "important": "🟠", "informative": "🔵"}.get(level, "⚪")


# --- Main App Layout ---

st.title("🧬 RNA-seq Differential Expression Walkthrough")
st.caption(
    "Five ways to get a p-value per gene from the same counts: ordinary linear models, "
    "limma-trend, voom, a negative binomial likelihood ratio test and a quasi-likelihood F test."
)
st.markdown("---")

base = _base_config()

with st.sidebar:
    st.header("1. Data")
    metadata_file = st.file_uploader("Sample metadata (CSV)", type=["csv"])
    counts_file = st.file_uploader("Count matrix (tab-delimited)", type=["tsv", "txt", "tab"])
    if not (metadata_file and counts_file):
        st.info("No files uploaded: the simulated demo dataset is used.")

    st.header("2. Design")
    factor_text = st.text_input("Design factors (comma separated)", ", ".join(base.design_factors))
    design_factors = [f.strip() for f in factor_text.split(",") if f.strip()]
    interest_text = st.text_input("Factors to test", ", ".join(base.factors_of_interest))
    factors_of_interest = [f.strip() for f in interest_text.split(",") if f.strip()]

    st.header("3. Filtering")
    filter_method = st.selectbox(
        "Filter", ["cpm", "filter_by_expr"], index=["cpm", "filter_by_expr"].index(base.filter_method)
    )
    min_cpm = st.number_input("Minimum CPM", min_value=0.0, value=float(base.min_cpm), step=0.5)
    norm_method = st.selectbox(
        "Normalization", ["TMM", "upperquartile", "RLE", "none"],
        index=["TMM", "upperquartile", "RLE", "none"].index(base.norm_method),
    )

    st.header("4. Methods")
    methods = st.multiselect("Methods", KNOWN_METHODS, default=[m for m in base.methods if m in KNOWN_METHODS])
    padj_threshold = st.number_input(
        "Adjusted p-value threshold", min_value=0.001, max_value=0.5, value=float(base.padj_threshold), step=0.01
    )

    run_clicked = st.button("Run Walkthrough", type="primary")

if run_clicked:
    try:
        config = AnalysisConfig(
            **{
                **base.to_dict(),
                "design_factors": design_factors,
                "factors_of_interest": factors_of_interest,
                "filter_method": filter_method,
                "min_cpm": min_cpm,
                "norm_method": norm_method,
                "methods": methods or list(DEFAULT_METHODS),
                "padj_threshold": padj_threshold,
                "metadata_path": None,
                "counts_path": None,
            }
        )
        walkthrough = DEWalkthrough(config)
        with st.spinner("Loading data..."):
            if metadata_file and counts_file:
                walkthrough.load(
                    io.BytesIO(metadata_file.getvalue()), io.BytesIO(counts_file.getvalue())
                )
            else:
                walkthrough.load()
        with st.spinner("Fitting models (the negative binomial methods take a while)..."):
            result = walkthrough.run()
            figures = walkthrough.generate_figures(result)
        st.session_state["result"] = result
        st.session_state["figures"] = figures
        st.session_state["walkthrough"] = walkthrough
        st.success("Walkthrough complete!")
    except (ConfigError, DataValidationError, DesignError, ComparisonError) as e:
        st.error(f"{type(e).__name__}: {e.message}")
        if e.details:
            st.json(e.details)
    except (ValueError, RuntimeError) as e:
        logger.error(f"Walkthrough failed: {str(e)}", exc_info=True)
        st.error(f"Walkthrough failed: {str(e)}")

result = st.session_state["result"]
figures = st.session_state["figures"]

if result is None:
    st.info("👋 Configure the analysis in the sidebar and click 'Run Walkthrough'.")
    with st.expander("About the demo dataset"):
        st.markdown(get_demo_description())
    st.stop()

for w in result.warnings:
    st.warning(w)

tab_data, tab_methods, tab_compare, tab_notes = st.tabs(
    ["📊 Data & QC", "🧪 Methods", "⚖️ Comparison", "📝 Interpretation"]
)

with tab_data:
    c1, c2, c3 = st.columns(3)
    c1.metric("Samples", result.filtered.n_samples)
    c2.metric("Genes (raw)", f"{result.raw.n_genes:,}")
    c3.metric("Genes (filtered)", f"{result.filtered.n_genes:,}")

    with st.expander("Sample metadata"):
        st.dataframe(result.filtered.metadata)
    with st.expander(f"Design matrix  {result.design.formula}"):
        st.dataframe(result.design.matrix)

    qc_figures = [
        "library_sizes", "count_distribution", "gene_detection", "log_cpm_density", "normalization",
        "pca", "outliers", "sample_similarity", "factor_effects",
    ]
    for name in qc_figures:
        if name in figures:
            st.plotly_chart(figures[name], use_container_width=True)

    if result.qc:
        st.subheader("Variance explained by metadata factors")
        st.dataframe(result.qc["factor_effects"].style.format("{:.1%}"))
        if result.qc["outliers"]:
            st.warning(f"Potential outlier samples: {', '.join(result.qc['outliers'])}")

with tab_methods:
    status = result.method_status()
    st.dataframe(status, use_container_width=True)

    keys = [k for k, r in result.de_results.items() if not r.failed]
    if keys:
        selected = st.selectbox(
            "Result table", keys, format_func=lambda k: f"{DEMethod(k[0]).label} / {k[1]}"
        )
        res = result.de_results[selected]
        st.caption(f"Test: {res.test}; {res.n_significant} genes with padj < {result.config.padj_threshold}")
        st.dataframe(res.results_df.sort_values("pvalue").head(1000))
        st.download_button(
            "Download table (CSV)",
            res.results_df.to_csv(index=False).encode("utf-8"),
            f"{selected[0]}_{selected[1]}.csv",
            "text/csv",
        )
        if res.results_df["log2FoldChange"].notna().any():
            st.plotly_chart(
                create_volcano_plot(
                    res.results_df, lfc_threshold=max(result.config.lfc_threshold, 1.0),
                    padj_threshold=result.config.padj_threshold, title=f"{selected[0]}: {selected[1]}",
                ),
                use_container_width=True,
            )

        top = top_genes(result.comparison, selected[1], selected[0], n=20)
        gene = st.selectbox("Gene", top["gene"].tolist())
        walkthrough = st.session_state["walkthrough"]
        if gene and walkthrough is not None:
            st.plotly_chart(
                create_gene_expression_plot(walkthrough.log_cpm(), result.filtered.metadata, gene, selected[1]),
                use_container_width=True,
            )

    c1, c2 = st.columns(2)
    with c1:
        if "voom_trend" in figures:
            st.plotly_chart(figures["voom_trend"], use_container_width=True)
    with c2:
        if "bcv" in figures:
            st.plotly_chart(figures["bcv"], use_container_width=True)

with tab_compare:
    if "hits" in figures:
        st.plotly_chart(figures["hits"], use_container_width=True)
    if not result.agreement.empty:
        st.dataframe(result.agreement, use_container_width=True)

    for factor in result.correlations:
        st.subheader(factor)
        for prefix in ["pvalue_histograms", "pvalue_correlation", "pvalue_scatter", "overlap"]:
            key = f"{prefix}_{factor}"
            if key in figures:
                st.plotly_chart(figures[key], use_container_width=True)
        if factor in result.overlaps:
            st.dataframe(result.overlaps[factor], use_container_width=True)

with tab_notes:
    for interp in result.interpretations:
        with st.expander(f"{_level_badge(interp.level)} {interp.title}", expanded=interp.level == "critical"):
            st.markdown(interp.description)
            for rec in interp.recommendations:
                st.markdown(f"- {rec}")

    walkthrough = st.session_state["walkthrough"]
    st.markdown(
        walkthrough.interpreter.generate_methods_text({
            "design": result.design.formula,
            "filter": walkthrough.filter_text,
            "norm_method": result.config.norm_method,
            "methods": result.config.methods,
            "padj": result.config.padj_threshold,
            "n_samples": result.filtered.n_samples,
            "n_genes": result.filtered.n_genes,
        })
    )

# Export Section
st.markdown("---")
st.header("Export Results")

if st.button("Generate Excel Workbook"):
    with st.spinner("Generating Excel..."):
        buffer = io.BytesIO()
        ExportEngine().export_excel(buffer, result)
        st.download_button(
            "Download Excel Workbook",
            buffer.getvalue(),
            "de_walkthrough.xlsx",
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        )
