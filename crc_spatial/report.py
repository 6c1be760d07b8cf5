"""Turn comparison results into a Markdown report with prose interpretation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .comparison import DOWN, UP
from .config import CONDITIONS, MarkerPanel

CAVEATS = [
    "Tumor and healthy sections were normalized separately; library size and "
    "tissue composition differences are only partly removed by total-count scaling.",
    "The two samples come from different donors and possibly different "
    "chemistries (e.g. FFPE vs fresh frozen), so platform and batch effects are "
    "confounded with condition.",
    "Each Visium spot (55 um) mixes several cells; a marker shift can reflect a "
    "change in cell-type composition rather than per-cell regulation.",
    "Spot-level tests treat spots as independent replicates; with one section per "
    "condition the p-values describe these two sections, not the populations.",
]


@dataclass
class ReportContext:
    """Everything the report needs, collected by the pipeline or the web app."""

    panels: Sequence[MarkerPanel]
    marker_table: pd.DataFrame
    marker_correlation: Mapping[str, float]
    genome_correlation: Optional[Mapping[str, float]] = None
    panel_table: Optional[pd.DataFrame] = None
    summaries: Dict[str, Mapping] = field(default_factory=dict)
    preprocess: Dict[str, Mapping] = field(default_factory=dict)
    cluster_annotations: Dict[str, pd.DataFrame] = field(default_factory=dict)
    missing_markers: Dict[str, List[str]] = field(default_factory=dict)
    alpha: float = 0.05
    min_log2fc: float = 0.5
    title: str = "Spatial transcriptomics: colorectal tumor vs healthy intestine"


def _fmt(value, digits: int = 3) -> str:
    if value is None:
        return "NA"
    if isinstance(value, (float, np.floating)):
        if np.isnan(value):
            return "NA"
        if value != 0 and abs(value) < 10 ** -digits:
            return f"{value:.2e}"
        return f"{value:.{digits}f}"
    return str(value)


def markdown_table(df: pd.DataFrame, columns: Optional[Sequence[str]] = None) -> str:
    columns = list(columns or df.columns)
    lines = ["| " + " | ".join(columns) + " |", "|" + "---|" * len(columns)]
    for _, row in df.iterrows():
        lines.append("| " + " | ".join(_fmt(row[c]) for c in columns) + " |")
    return "\n".join(lines)


def _gene_list(rows: pd.DataFrame) -> str:
    return ", ".join(f"{r.gene} (log2FC {r.log2fc:+.2f})" for r in rows.itertuples())


def observed_direction(rows: pd.DataFrame) -> str:
    """Summarize a panel's calls as up, down, mixed or unchanged."""
    n = len(rows)
    n_up = int((rows["direction"] == UP).sum())
    n_down = int((rows["direction"] == DOWN).sum())
    if n == 0 or (n_up == 0 and n_down == 0):
        return "unchanged"
    if n_up > n_down and n_up >= n / 2:
        return "up"
    if n_down > n_up and n_down >= n / 2:
        return "down"
    return "mixed"


def interpret_panel(panel: MarkerPanel, rows: pd.DataFrame) -> str:
    """One or two sentences describing how a marker panel behaves in tumor."""
    label = panel.description or panel.name
    n = len(rows)
    if n == 0:
        return f"{label} ({panel.name}): no marker was measured in both datasets."

    up = rows[rows["direction"] == UP].sort_values("log2fc", ascending=False)
    down = rows[rows["direction"] == DOWN].sort_values("log2fc")
    parts = [f"{label} ({panel.name}): {len(up)} of {n} genes higher in tumor"]
    if len(up):
        parts[-1] += f" ({_gene_list(up.head(3))})"
    parts.append(f"{len(down)} lower")
    if len(down):
        parts[-1] += f" ({_gene_list(down.head(3))})"
    sentence = ", ".join(parts) + "."

    observed = observed_direction(rows)
    expected = panel.expected_in_tumor
    if expected == "mixed":
        sentence += " No single direction is expected for this panel in colorectal tumor tissue."
    elif observed == expected:
        sentence += f" This matches the expected {expected}-regulation in colorectal tumor tissue."
    elif observed == "unchanged":
        sentence += f" No consistent shift was detected, although {expected}-regulation was expected."
    else:
        sentence += (
            f" This does not match the expected {expected}-regulation "
            f"(observed: {observed}), which may reflect sampling or composition differences."
        )
    return sentence


def correlation_strength(r: float) -> str:
    if np.isnan(r):
        return "undetermined"
    a = abs(r)
    if a < 0.3:
        return "weak"
    if a < 0.7:
        return "moderate"
    return "strong"


def interpret_correlation(corr: Mapping[str, float], what: str = "marker expression profiles") -> str:
    r = corr.get("spearman_r", np.nan)
    if r is None or np.isnan(r):
        return f"The correlation of {what} could not be computed (n = {corr.get('n', 0)})."
    sign = "positive" if r > 0 else "negative"
    return (
        f"Tumor and healthy {what} show a {correlation_strength(r)} {sign} correlation "
        f"(Spearman rho = {r:.2f}, p = {_fmt(corr.get('spearman_p'))}; "
        f"Pearson r = {_fmt(corr.get('pearson_r'), 2)}; n = {corr.get('n')})."
    )


def _panel_score_sentence(row, alpha: float = 0.05) -> str:
    if np.isnan(row.pval_adj):
        return f"- {row.panel}: score test not available."
    where = "higher" if row.difference > 0 else "lower"
    sig = "significant" if row.pval_adj < alpha else "not significant"
    return (
        f"- {row.panel}: mean score {where} in tumor by {abs(row.difference):.3f} "
        f"(rank-biserial r = {row.effect_size:+.2f}, adjusted p = {_fmt(row.pval_adj)}, {sig})."
    )


def overall_summary(ctx: ReportContext) -> str:
    table = ctx.marker_table
    n_up = int((table["direction"] == UP).sum())
    n_down = int((table["direction"] == DOWN).sum())
    matches, tested = [], 0
    for panel in ctx.panels:
        if panel.expected_in_tumor == "mixed":
            continue
        rows = table[table["panel"] == panel.name]
        if rows.empty:
            continue
        tested += 1
        if observed_direction(rows) == panel.expected_in_tumor:
            matches.append(panel.name)
    text = (
        f"Of {len(table)} marker genes measured in both sections, {n_up} are higher and "
        f"{n_down} lower in the tumor (adjusted p < {ctx.alpha} and |log2FC| >= {ctx.min_log2fc})."
    )
    if tested:
        text += (
            f" {len(matches)} of {tested} panels with an expected direction behave as expected"
            + (f" ({', '.join(matches)})." if matches else ".")
        )
    return text


def build_report(ctx: ReportContext) -> str:
    """Render the full Markdown report."""
    out: List[str] = [f"# {ctx.title}", "", f"_Generated {date.today().isoformat()}_", ""]

    out += ["## Data", ""]
    for cond in CONDITIONS:
        s = ctx.summaries.get(cond)
        if not s:
            continue
        out.append(
            f"- **{cond}**: {s.get('n_spots')} spots x {s.get('n_genes')} genes from "
            f"`{s.get('source')}` (spatial coordinates: {'yes' if s.get('has_spatial') else 'no'}, "
            f"tissue image: {'yes' if s.get('has_image') else 'no'})"
        )
    out.append("")

    if ctx.preprocess:
        out += ["## QC", ""]
        for cond in CONDITIONS:
            p = ctx.preprocess.get(cond)
            if not p:
                continue
            qc = p["qc"]
            out.append(
                f"- **{cond}**: kept {qc['n_spots_after']}/{qc['n_spots_before']} spots and "
                f"{qc['n_genes_after']}/{qc['n_genes_before']} genes (removed for low counts: "
                f"{qc['removed_low_counts']}, low genes: {qc['removed_low_genes']}, "
                f"high mitochondrial %: {qc['removed_high_mt']})."
            )
        out.append("")

    if ctx.preprocess or any(a is not None and not a.empty for a in ctx.cluster_annotations.values()):
        out += ["## Clustering", ""]
    for cond in CONDITIONS:
        p = ctx.preprocess.get(cond)
        if not p:
            continue
        out.append(
            f"- **{cond}**: {p['n_hvg']} HVGs; {p['n_pcs_used']} PCs used "
            f"({p['pcs_for_variance']} reach the variance target); {p['n_clusters']} Leiden clusters."
        )
    if ctx.preprocess:
        out.append("")

    for cond in CONDITIONS:
        ann = ctx.cluster_annotations.get(cond)
        if ann is None or ann.empty:
            continue
        out += [f"### Cluster annotation by marker panel ({cond})", ""]
        out += [markdown_table(ann, ["cluster", "panel", "z_score", "n_spots"]), ""]

    out += ["## Marker comparison", ""]
    missing = {k: v for k, v in ctx.missing_markers.items() if v}
    for cond, genes in missing.items():
        out.append(f"Markers not measured in {cond}: {', '.join(genes)}.")
    if missing:
        out.append("")
    out += [
        markdown_table(
            ctx.marker_table,
            ["gene", "panel", "mean_tumor", "mean_healthy", "pct_tumor", "pct_healthy",
             "log2fc", "effect_size", "pval_adj", "direction"],
        ),
        "",
    ]

    out += ["## Correlation", ""]
    out.append(interpret_correlation(ctx.marker_correlation))
    if ctx.genome_correlation is not None:
        out.append("")
        out.append(interpret_correlation(ctx.genome_correlation, "pseudo-bulk transcriptomes"))
    out.append("")

    if ctx.panel_table is not None and not ctx.panel_table.empty:
        out += ["## Panel scores", ""]
        out += [_panel_score_sentence(r, ctx.alpha) for r in ctx.panel_table.itertuples()]
        out.append("")

    out += ["## Interpretation", "", overall_summary(ctx), ""]
    for panel in ctx.panels:
        rows = ctx.marker_table[ctx.marker_table["panel"] == panel.name]
        out.append(f"- {interpret_panel(panel, rows)}")
    out.append("")

    out += ["## Caveats", ""]
    out += [f"- {c}" for c in CAVEATS]
    out.append("")
    return "\n".join(out)
