#!/usr/bin/env python3
"""
NMF clustering utilities for TCGA-OV RNA-seq analysis
Handles multi-restart NMF, the patient consensus matrix and silhouette filtering
"""

import warnings

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns
from scipy.cluster.hierarchy import cophenet, linkage
from scipy.spatial.distance import squareform
from sklearn.decomposition import NMF
from sklearn.exceptions import ConvergenceWarning
from sklearn.metrics import silhouette_samples

from tcga_ov.params import NMF_PARAMS
from tcga_ov.qc_utils import check_alignment


def _dense(X):
    return X.toarray() if hasattr(X, "toarray") else np.asarray(X)


def cophenetic_correlation(consensus):
    """Cophenetic correlation of average-linkage clustering on 1 - consensus

    Args:
        consensus: Patient x patient consensus matrix (values in [0, 1])

    Returns:
        float (nan when every pair has the same consensus)
    """
    distance = 1.0 - np.asarray(consensus, dtype=float)
    np.fill_diagonal(distance, 0.0)
    condensed = squareform(distance, checks=False)
    if np.allclose(condensed, condensed[0]):
        return float("nan")

    Z = linkage(condensed, method="average")
    corr, _ = cophenet(Z, condensed)
    return float(corr)


def run_nmf(
    adata,
    rank=NMF_PARAMS["rank"],
    n_runs=NMF_PARAMS["n_runs"],
    max_iter=NMF_PARAMS["max_iter"],
    init=NMF_PARAMS["init"],
    random_state=NMF_PARAMS["random_state"],
):
    """Factorize the patient x gene matrix with repeated random restarts

    The restart with the lowest reconstruction error is kept as the fit.
    Every restart votes on which patients share an arg-max cluster; the
    averaged votes form the consensus matrix.

    Args:
        adata: Log-normalized AnnData restricted to the variable genes
        rank: Number of clusters
        n_runs: Number of random restarts
        max_iter: Maximum solver iterations per restart
        init: sklearn NMF initialization
        random_state: Seed of the first restart (restart i uses seed + i)

    Returns:
        Copy with `obsm["X_nmf"]` (patient x cluster mixture coefficients),
        `varm["nmf_basis"]` (gene x cluster loadings),
        `obsp["nmf_consensus"]` and `uns["nmf"]`
    """
    print(f"Running NMF (rank={rank}, runs={n_runs})...")

    X = _dense(adata.X).astype(np.float64)
    if (X < 0).any():
        raise ValueError("NMF input contains negative values")

    n_patients = X.shape[0]
    consensus = np.zeros((n_patients, n_patients), dtype=np.float64)
    best_err = np.inf
    best_W = best_H = None

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        for run in range(n_runs):
            model = NMF(
                n_components=rank,
                init=init,
                max_iter=max_iter,
                random_state=random_state + run,
            )
            W = model.fit_transform(X)
            labels = np.argmax(W, axis=1)
            consensus += labels[:, None] == labels[None, :]

            if model.reconstruction_err_ < best_err:
                best_err = float(model.reconstruction_err_)
                best_W = W
                best_H = model.components_

            if (run + 1) % 10 == 0 or run + 1 == n_runs:
                print(f"  Run {run + 1}/{n_runs}, best error {best_err:.4f}")

    consensus /= n_runs

    adata = adata.copy()
    adata.obsm["X_nmf"] = best_W
    adata.varm["nmf_basis"] = best_H.T
    adata.obsp["nmf_consensus"] = consensus
    adata.uns["nmf"] = {
        "rank": int(rank),
        "n_runs": int(n_runs),
        "reconstruction_err": best_err,
        "cophenetic": cophenetic_correlation(consensus),
    }
    print(f"  Cophenetic correlation: {adata.uns['nmf']['cophenetic']:.3f}")

    return adata


def compute_silhouette(adata):
    """Per-patient silhouette width of its arg-max cluster

    Distances are 1 - consensus.

    Args:
        adata: AnnData after `run_nmf`

    Returns:
        Copy with `obs["nmf_silhouette"]`
    """
    for key, slot in (("X_nmf", adata.obsm), ("nmf_consensus", adata.obsp)):
        if key not in slot:
            raise KeyError(f"'{key}' not found; run NMF first")

    labels = np.argmax(np.asarray(adata.obsm["X_nmf"]), axis=1)
    distance = 1.0 - _dense(adata.obsp["nmf_consensus"])
    np.fill_diagonal(distance, 0.0)

    adata = adata.copy()
    adata.obs["nmf_silhouette"] = silhouette_samples(
        distance, labels, metric="precomputed"
    )

    print(
        f"Silhouette widths: median {adata.obs['nmf_silhouette'].median():.3f}, "
        f"min {adata.obs['nmf_silhouette'].min():.3f}"
    )

    return adata


def filter_by_silhouette(adata, min_silhouette=NMF_PARAMS["min_silhouette"]):
    """Drop patients whose silhouette width is below `min_silhouette`

    Args:
        adata: AnnData with `obs["nmf_silhouette"]`
        min_silhouette: Patients with width >= this value are kept

    Returns:
        Filtered copy
    """
    if "nmf_silhouette" not in adata.obs:
        raise KeyError("'nmf_silhouette' not found in adata.obs")

    keep = (adata.obs["nmf_silhouette"] >= min_silhouette).to_numpy()
    print(
        f"Silhouette filter (>= {min_silhouette}): "
        f"keeping {keep.sum():,} / {adata.n_obs:,} patients"
    )
    if not keep.any():
        raise ValueError(f"No patients with silhouette >= {min_silhouette}")

    filtered = adata[keep].copy()
    check_alignment(filtered)

    return filtered


def plot_silhouette(adata, min_silhouette=NMF_PARAMS["min_silhouette"], save_dir=None):
    """Plot the silhouette profile per cluster with the filter threshold

    Args:
        adata: AnnData with `obs["nmf_silhouette"]` and `obs["nmf_cluster"]`
        min_silhouette: Threshold drawn on the plot
        save_dir: Directory to save plots (optional). If provided, plots are saved without display.
    """
    print("Plotting silhouette profile...")

    obs = adata.obs[["nmf_cluster", "nmf_silhouette"]].copy()
    obs = obs.sort_values(["nmf_cluster", "nmf_silhouette"], ascending=[True, False])

    fig, axes = plt.subplots(1, 2, figsize=(14, 5))

    palette = dict(
        zip(
            obs["nmf_cluster"].cat.categories,
            sns.color_palette(n_colors=len(obs["nmf_cluster"].cat.categories)),
        )
    )
    axes[0].bar(
        range(len(obs)),
        obs["nmf_silhouette"],
        color=[palette[c] for c in obs["nmf_cluster"]],
        width=1.0,
    )
    axes[0].axhline(min_silhouette, color="red", linestyle="--", linewidth=1)
    axes[0].set_xlabel("Patients (sorted within cluster)")
    axes[0].set_ylabel("Silhouette width")
    axes[0].set_title("Silhouette profile")

    sns.histplot(
        data=obs,
        x="nmf_silhouette",
        hue="nmf_cluster",
        palette=palette,
        bins=30,
        multiple="stack",
        ax=axes[1],
    )
    axes[1].axvline(min_silhouette, color="red", linestyle="--", linewidth=1)
    axes[1].set_xlabel("Silhouette width")
    axes[1].set_title("Silhouette distribution")

    plt.tight_layout()

    if save_dir:
        fig.savefig(save_dir / "nmf_silhouette.png", dpi=300, bbox_inches="tight")
        print(f"  Saved: {save_dir}/nmf_silhouette.png")
        plt.close(fig)
    else:
        plt.show()
