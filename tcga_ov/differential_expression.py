#!/usr/bin/env python3
"""
Differential expression utilities for TCGA-OV RNA-seq analysis
Handles one-vs-rest marker genes per NMF cluster and subtype renaming
"""

import matplotlib.pyplot as plt
import pandas as pd
import scanpy as sc

from tcga_ov.annotation import annotate_symbols
from tcga_ov.params import DE_PARAMS, SUBTYPE_NAMES


def compute_cluster_markers(
    adata,
    clusters,
    groupby="nmf_cluster",
    method=DE_PARAMS["method"],
    n_top=DE_PARAMS["n_top"],
    pval_adj_cutoff=DE_PARAMS["pval_adj_cutoff"],
    save_dir=None,
):
    """Compute top marker genes per cluster (one-vs-rest).

    Args:
        adata: Log-normalized AnnData over all detected genes (not only HVGs)
        clusters: Series of cluster labels indexed by retained patient
        groupby: Name of the label column added for the test
        method: DE method passed to scanpy (e.g., "wilcoxon", "t-test")
        n_top: Number of top genes to rank per cluster
        pval_adj_cutoff: Optional adjusted p-value cutoff to filter results
        save_dir: Optional Path to save a CSV of the markers

    Returns:
        Pandas DataFrame with ranked markers across all clusters, annotated
        with `symbol` and `entrez_id`
    """
    print(f"Computing {method} markers per cluster...")

    missing = clusters.index.difference(adata.obs_names)
    if len(missing):
        raise KeyError(f"Patients not in expression data: {missing[:5].tolist()}")

    sub = adata[clusters.index].copy()
    sub.obs[groupby] = pd.Categorical(clusters.to_numpy())
    if sub.obs[groupby].nunique() < 2:
        raise ValueError("Marker detection needs at least two clusters")

    sc.tl.rank_genes_groups(
        sub,
        groupby=groupby,
        method=method,
        n_genes=int(n_top),
        pts=True,
    )

    markers_df = sc.get.rank_genes_groups_df(sub, None)
    if "pvals_adj" in markers_df.columns and pval_adj_cutoff is not None:
        markers_df = markers_df[markers_df["pvals_adj"] <= float(pval_adj_cutoff)]
    markers_df = markers_df.reset_index(drop=True)

    markers_df["symbol"] = annotate_symbols(markers_df["names"], sub.var)
    markers_df["entrez_id"] = sub.var.loc[markers_df["names"], "entrez_id"].to_numpy()

    print(
        f"  {len(markers_df):,} markers across {markers_df['group'].nunique()} clusters"
    )

    if save_dir is not None:
        out_csv = save_dir / "cluster_markers.csv"
        markers_df.to_csv(out_csv, index=False)
        print(f"  Saved: {out_csv}")

    return markers_df


def marker_gene_ids(markers_df, n_top=None):
    """Unique marker gene ids in table order, optionally the top `n_top` per cluster"""
    if n_top is not None:
        markers_df = markers_df.groupby("group", observed=True, sort=False).head(int(n_top))
    return list(dict.fromkeys(markers_df["names"]))


def rename_clusters(adata, mapping=SUBTYPE_NAMES, key="nmf_cluster", new_key="nmf_subtype"):
    """Rename NMF clusters to subtype names.

    The rename happens once; calling it again on the same AnnData raises.

    Args:
        adata: AnnData with cluster labels in `obs[key]`
        mapping: Dictionary cluster label -> subtype name
        key: Cluster label column
        new_key: Column receiving the subtype names

    Returns:
        Copy with categorical `obs[new_key]`
    """
    if key not in adata.obs:
        raise KeyError(f"Cluster key '{key}' not found in adata.obs")
    if new_key in adata.obs:
        raise ValueError(f"Clusters were already renamed into '{new_key}'")

    present = adata.obs[key].astype(str)
    unknown = sorted(set(present) - set(mapping))
    if unknown:
        raise KeyError(f"No subtype name for clusters: {unknown}")

    categories = [mapping[c] for c in mapping if c in set(present)]

    adata = adata.copy()
    adata.obs[new_key] = pd.Categorical(present.map(mapping), categories=categories)

    print("Subtype sizes:")
    print(adata.obs[new_key].value_counts().to_string())

    return adata


def plot_marker_genes(adata, markers_df, groupby="nmf_cluster", n_genes=5, save_dir=None):
    """Dotplot of the top markers per cluster, labelled by gene symbol

    Args:
        adata: Log-normalized AnnData with `obs[groupby]`
        markers_df: Output of `compute_cluster_markers`
        groupby: Cluster column
        n_genes: Markers shown per cluster
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting marker genes...")

    top = markers_df.groupby("group", observed=True, sort=True).head(int(n_genes))
    if top.empty:
        print("  No markers to plot")
        return

    plot_data = adata[:, list(dict.fromkeys(top["names"]))].copy()
    plot_data.var_names = annotate_symbols(plot_data.var_names, plot_data.var)
    plot_data.var_names_make_unique()
    symbol_of = dict(zip(top["names"].drop_duplicates(), plot_data.var_names))

    var_names = {}
    for group, sub in top.groupby("group", observed=True, sort=True):
        genes = [symbol_of[g] for g in sub["names"]]
        var_names[str(group)] = list(dict.fromkeys(genes))

    sc.pl.dotplot(
        plot_data,
        var_names,
        groupby=groupby,
        standard_scale="var",
        show=False,
    )

    if save_dir:
        plt.savefig(save_dir / "marker_genes_dotplot.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/marker_genes_dotplot.png")
        plt.close("all")
    else:
        plt.show()
