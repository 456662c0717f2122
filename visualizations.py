"""
Plotly figures for differential expression and enrichment results.

Every function returns a go.Figure; nothing is rendered or written to disk.
"""

from typing import Dict, List, Sequence, Tuple
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px
from sklearn.decomposition import PCA

from count_preparation import CountMatrix, SampleGroupAssignment
from de_analysis import normalize_counts
from gene_classifier import ClassifiedGene, RegulationLabel
from gene_sets import GeneSet
from pathway_aggregator import PathwayGeneView
from pathway_enrichment import EnrichmentResult, results_to_frame
from ranked_enrichment import enrichment_score, running_sum, validate_ranking

LABEL_NAMES = {
    RegulationLabel.UP: "Up",
    RegulationLabel.DOWN: "Down",
    RegulationLabel.NOT_SIGNIFICANT: "NS",
}
LABEL_COLORS = {"Up": "red", "Down": "blue", "NS": "lightgray", "Untested": "black"}


def create_volcano_plot(
    classified: Sequence[ClassifiedGene],
    lfc_threshold: float = 1.0,
    padj_threshold: float = 0.05,
    top_n_labels: int = 10,
) -> go.Figure:
    """
    Create interactive volcano plot from classified genes.

    Args:
        classified: ClassifiedGenes (untested genes are left out)
        lfc_threshold: Log2 fold change threshold line (default: 1.0)
        padj_threshold: Adjusted p-value threshold line (default: 0.05)
        top_n_labels: Number of most significant changed genes to label

    Returns:
        Plotly Figure object
    """
    rows = [
        {
            "gene": g.symbol or g.gene_id,
            "log2FoldChange": g.result.log2_fold_change,
            "padj": g.result.padj,
            "significance": LABEL_NAMES[g.label],
        }
        for g in classified
        if not np.isnan(g.result.padj) and not np.isnan(g.result.log2_fold_change)
    ]
    if not rows:
        raise ValueError(
            "Cannot create volcano plot: no gene has an adjusted p-value. "
            "Ensure differential expression analysis completed successfully."
        )
    df = pd.DataFrame(rows)
    df["-log10_padj"] = -np.log10(df["padj"].clip(lower=1e-300))  # Clip to avoid inf

    fig = px.scatter(
        df,
        x="log2FoldChange",
        y="-log10_padj",
        color="significance",
        hover_name="gene",
        hover_data={
            "log2FoldChange": ":.2f",
            "padj": ":.2e",
            "-log10_padj": False,
            "significance": False,
        },
        color_discrete_map=LABEL_COLORS,
        labels={"log2FoldChange": "log₂(Fold Change)", "-log10_padj": "-log₁₀(padj)"},
    )

    fig.add_hline(y=-np.log10(padj_threshold), line_dash="dash", line_color="gray")
    fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="gray")
    fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="gray")

    if top_n_labels > 0:
        top_genes = df[df["significance"] != "NS"].nsmallest(top_n_labels, "padj")
        if not top_genes.empty:
            fig.add_trace(
                go.Scatter(
                    x=top_genes["log2FoldChange"],
                    y=top_genes["-log10_padj"],
                    mode="text",
                    text=top_genes["gene"],
                    textposition="top center",
                    textfont=dict(size=9),
                    showlegend=False,
                    hoverinfo="skip",
                )
            )

    fig.update_layout(title="Volcano Plot", showlegend=True)
    return fig


def create_pca_plot(
    counts: CountMatrix,
    groups: SampleGroupAssignment,
    show_ellipses: bool = True,
) -> go.Figure:
    """
    PCA of samples on log2 normalized counts.

    Args:
        counts: Prepared count matrix
        groups: Sample → group assignment (used for colouring)
        show_ellipses: Draw 95% confidence ellipses for groups with >= 3 samples
    """
    if counts.n_samples < 2:
        raise ValueError(
            f"Cannot create PCA plot: requires at least 2 samples, but got {counts.n_samples}."
        )
    _, log_normalized = normalize_counts(counts)
    expression = log_normalized.T  # samples × genes

    n_components = min(2, expression.shape[0], expression.shape[1])
    pca = PCA(n_components=n_components)
    pca_result = pca.fit_transform(expression.values)
    if n_components < 2:
        pca_result = np.column_stack([pca_result, np.zeros(len(pca_result))])
    variance = list(pca.explained_variance_ratio_) + [0.0] * (2 - n_components)

    pca_df = pd.DataFrame(pca_result[:, :2], columns=["PC1", "PC2"], index=expression.index)
    pca_df["condition"] = [groups.get(s) or "Unknown" for s in pca_df.index]
    pca_df["sample"] = pca_df.index

    fig = px.scatter(
        pca_df,
        x="PC1",
        y="PC2",
        color="condition",
        hover_name="sample",
        labels={
            "PC1": f"PC1 ({variance[0] * 100:.1f}%)",
            "PC2": f"PC2 ({variance[1] * 100:.1f}%)",
        },
    )

    if show_ellipses:
        colors = px.colors.qualitative.Plotly
        for i, cond in enumerate(sorted(pca_df["condition"].unique())):
            group = pca_df[pca_df["condition"] == cond]
            if len(group) < 3:
                continue
            ellipse_pts = _confidence_ellipse(group["PC1"].values, group["PC2"].values)
            fig.add_trace(
                go.Scatter(
                    x=ellipse_pts[:, 0],
                    y=ellipse_pts[:, 1],
                    mode="lines",
                    line=dict(color=colors[i % len(colors)], dash="dash", width=1.5),
                    showlegend=False,
                    hoverinfo="skip",
                )
            )

    fig.update_layout(title="PCA Plot", showlegend=True)
    return fig


def _confidence_ellipse(x: np.ndarray, y: np.ndarray, chi2: float = 5.991) -> np.ndarray:
    """95% ellipse (chi2 with 2 df) around the points, as (100, 2) coordinates."""
    cov = np.cov(x, y)
    eigenvalues, eigenvectors = np.linalg.eigh(cov)
    order = eigenvalues.argsort()[::-1]
    eigenvalues = eigenvalues[order]
    eigenvectors = eigenvectors[:, order]
    theta = np.linspace(0, 2 * np.pi, 100)
    circle = np.array([np.cos(theta), np.sin(theta)])
    transform = eigenvectors @ np.diag(np.sqrt(np.maximum(eigenvalues, 0)) * np.sqrt(chi2))
    return (transform @ circle).T + np.array([x.mean(), y.mean()])


def create_enrichment_dotplot(
    results: Sequence[EnrichmentResult],
    top_n: int = 20,
    title: str = "Enrichment Results",
) -> go.Figure:
    """
    Dot plot of the top terms by adjusted p-value.

    Dot size is the overlap (ORA) or the number of ranked members (GSEA).
    """
    df = results_to_frame(results, top_n=top_n)
    if df.empty:
        fig = go.Figure()
        fig.update_layout(
            title=title,
            annotations=[dict(
                text="No enrichment results to display",
                xref="paper", yref="paper",
                x=0.5, y=0.5, showarrow=False, font=dict(size=16)
            )]
        )
        return fig

    df["gene_count"] = df["Overlap"].str.split("/").str[0].astype(int)
    df["-log10_padj"] = -np.log10(df["Adjusted P-value"].astype(float).clip(lower=1e-300))
    df["term_display"] = df["Term"].astype(str).apply(
        lambda x: x[:60] + "..." if len(x) > 60 else x
    )
    df = df.sort_values("-log10_padj", ascending=True)

    fig = go.Figure()
    fig.add_trace(go.Scatter(
        x=df["-log10_padj"],
        y=df["term_display"],
        mode="markers",
        marker=dict(
            size=df["gene_count"].clip(lower=5, upper=40),
            color=df["-log10_padj"],
            colorscale="Viridis",
            showscale=True,
            colorbar=dict(title="-log₁₀(Adj. P)"),
            line=dict(width=1, color="DarkSlateGrey"),
        ),
        text=[f"Genes: {g}" for g in df["Genes"]],
        hovertemplate=(
            "<b>%{y}</b><br>"
            "-log₁₀(padj): %{x:.2f}<br>"
            "Gene count: %{marker.size}<br>"
            "%{text}<extra></extra>"
        ),
    ))
    fig.update_layout(
        title=title,
        xaxis_title="-log₁₀(Adjusted P-value)",
        yaxis_title="",
        height=max(400, len(df) * 25 + 100),
        margin=dict(l=300),
        showlegend=False,
    )
    return fig


def create_gsea_plot(
    ranked_genes: Sequence[Tuple[str, float]],
    gene_set: GeneSet,
    weight: float = 1.0,
) -> go.Figure:
    """
    Running enrichment score along the ranking, with member positions marked.
    """
    genes, scores = validate_ranking(ranked_genes)
    hits = np.array([g in gene_set.members for g in genes])
    if not hits.any():
        raise ValueError(f"No member of '{gene_set.term_id}' is present in the ranking")
    rs = running_sum(scores, hits, weight)
    es, peak = enrichment_score(rs)
    positions = np.arange(1, len(genes) + 1)

    fig = go.Figure()
    fig.add_trace(go.Scatter(
        x=positions, y=rs, mode="lines", name="Running ES", line=dict(color="green"),
    ))
    fig.add_trace(go.Scatter(
        x=positions[hits],
        y=np.full(int(hits.sum()), float(rs.min()) - 0.05),
        mode="markers",
        marker=dict(symbol="line-ns-open", size=12, color="black"),
        text=[genes[i] for i in np.flatnonzero(hits)],
        hoverinfo="text",
        name="Members",
    ))
    fig.add_hline(y=0, line_color="gray")
    fig.add_vline(x=int(peak) + 1, line_dash="dash", line_color="red")
    fig.update_layout(
        title=f"{gene_set.name} (ES = {float(es):.3f})",
        xaxis_title="Rank",
        yaxis_title="Enrichment score",
        showlegend=False,
    )
    return fig


def create_pathway_plot(
    pathway_id: str,
    views: Sequence[PathwayGeneView],
) -> go.Figure:
    """
    log2 fold change of every pathway member, coloured by label.

    Untested members are drawn at 0 in black.
    """
    rows: List[Dict[str, object]] = []
    for v in views:
        if v.tested:
            lfc = v.result.log2_fold_change
            rows.append({
                "gene": v.result.symbol or v.gene_id,
                "log2FoldChange": 0.0 if np.isnan(lfc) else lfc,
                "status": LABEL_NAMES[v.label],
            })
        else:
            rows.append({"gene": v.gene_id, "log2FoldChange": 0.0, "status": "Untested"})
    df = pd.DataFrame(rows, columns=["gene", "log2FoldChange", "status"])

    fig = px.bar(
        df,
        x="gene",
        y="log2FoldChange",
        color="status",
        color_discrete_map=LABEL_COLORS,
        labels={"log2FoldChange": "log₂(Fold Change)", "gene": ""},
    )
    fig.update_layout(title=f"Pathway {pathway_id}", showlegend=True)
    return fig
