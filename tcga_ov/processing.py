#!/usr/bin/env python3
"""
Processing utilities for TCGA-OV RNA-seq analysis
Handles normalization, variable gene selection, cluster labels and UMAP
"""

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc

from tcga_ov.params import FEATURE_PARAMS, EMBEDDING_PARAMS
from tcga_ov.qc_utils import check_alignment


def normalize_counts(adata, target_sum=FEATURE_PARAMS["target_sum"]):
    """Library-size normalize and log transform

    Raw counts stay in `layers["counts"]`.

    Args:
        adata: AnnData object with raw counts in X
        target_sum: Counts per patient after normalization (None = median)

    Returns:
        Normalized copy of the AnnData object
    """
    print("Normalizing counts...")

    adata = adata.copy()
    if "counts" not in adata.layers:
        adata.layers["counts"] = adata.X.copy()
    adata.X = adata.X.astype(np.float32)

    sc.pp.normalize_total(adata, target_sum=target_sum)

    # Log transform
    sc.pp.log1p(adata)

    return adata


def select_variable_genes(
    adata,
    n_top_genes=FEATURE_PARAMS["n_top_genes"],
    flavor=FEATURE_PARAMS["flavor"],
):
    """Keep the top variable genes of a log-normalized AnnData

    Args:
        adata: Log-normalized AnnData object
        n_top_genes: Number of genes to keep
        flavor: scanpy highly-variable-gene flavor

    Returns:
        Copy restricted to the highly variable genes
    """
    n_top = min(int(n_top_genes), adata.n_vars)
    print(f"Selecting top {n_top:,} variable genes...")

    adata = adata.copy()
    sc.pp.highly_variable_genes(adata, n_top_genes=n_top, flavor=flavor)

    # Ties at the cutoff can let scanpy flag more than n_top genes
    score_col = "variances_norm" if flavor == "seurat_v3" else "dispersions_norm"
    ranked = adata.var[score_col].fillna(-np.inf).sort_values(ascending=False, kind="stable")
    adata.var["highly_variable"] = adata.var_names.isin(ranked.index[:n_top])
    hvg = adata[:, adata.var["highly_variable"].to_numpy()].copy()

    check_alignment(hvg)
    print(f"  Kept {hvg.n_vars:,} genes")

    return hvg


def assign_cluster_labels(adata, prefix=EMBEDDING_PARAMS["label_prefix"]):
    """Label each patient with the arg-max cluster of its mixture coefficients

    Args:
        adata: AnnData with `obsm["X_nmf"]`
        prefix: Label prefix (labels are prefix + 1-based cluster index)

    Returns:
        Copy with categorical `obs["nmf_cluster"]`
    """
    if "X_nmf" not in adata.obsm:
        raise KeyError("'X_nmf' not found in adata.obsm; run NMF first")

    adata = adata.copy()
    coef = np.asarray(adata.obsm["X_nmf"])
    categories = [f"{prefix}{i + 1}" for i in range(coef.shape[1])]
    labels = [categories[i] for i in np.argmax(coef, axis=1)]
    adata.obs["nmf_cluster"] = pd.Categorical(labels, categories=categories)

    print("Cluster sizes:")
    print(adata.obs["nmf_cluster"].value_counts().sort_index().to_string())

    return adata


def embed_clusters(adata, n_neighbors=EMBEDDING_PARAMS["n_neighbors"], random_state=0):
    """Build a kNN graph and UMAP over the NMF mixture coefficients

    The embedding is only used for plots.

    Args:
        adata: AnnData with `obsm["X_nmf"]`
        n_neighbors: Neighbors in the kNN graph

    Returns:
        Copy with `obsp` graph and `obsm["X_umap"]`
    """
    if "X_nmf" not in adata.obsm:
        raise KeyError("'X_nmf' not found in adata.obsm; run NMF first")

    adata = adata.copy()

    print("Computing neighborhood graph...")
    sc.pp.neighbors(
        adata, n_neighbors=n_neighbors, use_rep="X_nmf", random_state=random_state
    )

    print("Running UMAP...")
    sc.tl.umap(adata, random_state=random_state)

    return adata


def plot_embeddings(adata, save_dir=None):
    """Plot UMAP embeddings

    Args:
        adata: AnnData object with UMAP coordinates
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting embeddings...")

    colors = [
        ("nmf_cluster", "NMF cluster"),
        ("nmf_subtype", "NMF subtype"),
        ("nmf_silhouette", "Silhouette width"),
    ]
    colors = [(key, title) for key, title in colors if key in adata.obs]

    fig, axes = plt.subplots(1, len(colors), figsize=(6 * len(colors), 5))
    axes = np.atleast_1d(axes)

    for ax, (key, title) in zip(axes, colors):
        sc.pl.umap(adata, color=key, title=title, ax=ax, show=False)

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "umap_nmf_clusters.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/umap_nmf_clusters.png")
        plt.close(fig)
    else:
        plt.show()
