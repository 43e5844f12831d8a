#!/usr/bin/env python3
"""
consensusOV cross-validation utilities for TCGA-OV RNA-seq analysis
Handles the external subtype classifier and confidence filtering
"""

import numpy as np
import pandas as pd
from sklearn.metrics import adjusted_rand_score

from tcga_ov.params import CONSENSUS_PARAMS
from tcga_ov.qc_utils import check_alignment


def run_consensus_ov(counts_df, entrez_ids, method=CONSENSUS_PARAMS["method"]):
    """Classify patients with the Bioconductor consensusOV package via rpy2.

    Args:
        counts_df: Count matrix, genes x patients
        entrez_ids: Entrez id per row of `counts_df`
        method: consensusOV subtyping method

    Returns:
        Tuple of (label Series indexed by patient,
        class-probability DataFrame patients x labels)
    """
    # R and consensusOV are only needed here
    from rpy2 import robjects as ro
    from rpy2.robjects.packages import importr

    consensus_ov = importr("consensusOV")

    values = counts_df.to_numpy(dtype=np.float64)
    n_genes, n_patients = values.shape
    matrix = ro.r.matrix(
        ro.FloatVector(values.ravel(order="F")), nrow=n_genes, ncol=n_patients
    )
    entrez = ro.IntVector([int(e) for e in entrez_ids])

    print(f"Running consensusOV on {n_patients:,} patients x {n_genes:,} genes...")
    result = consensus_ov.get_subtypes(matrix, entrez, method=method)

    labels = list(ro.r["as.character"](result.rx2("consensusOV.subtypes")))
    probs = result.rx2("rf.probs")
    nrow = int(ro.r["nrow"](probs)[0])
    ncol = int(ro.r["ncol"](probs)[0])
    prob_cols = [str(c) for c in ro.r["colnames"](probs)]
    # R matrices are column-major
    prob_values = np.array(list(probs), dtype=np.float64).reshape((ncol, nrow)).T

    patients = counts_df.columns
    labels = pd.Series(labels, index=patients, name="consensus_subtype")
    probs_df = pd.DataFrame(prob_values, index=patients, columns=prob_cols)

    return labels, probs_df


def classify_consensus(adata, classifier=run_consensus_ov):
    """Assign a consensus subtype and class probabilities to every patient.

    The classifier sees the full gene-level count matrix (before variable
    gene selection) keyed by Entrez id.

    Args:
        adata: AnnData with `layers["counts"]` and `var["entrez_id"]`
        classifier: Callable (counts_df, entrez_ids) -> (labels, probs_df)

    Returns:
        Copy with `obs["consensus_subtype"]`, `obs["consensus_probability"]`
        and `obsm["consensus_probs"]`
    """
    if "entrez_id" not in adata.var:
        raise KeyError("'entrez_id' not found in adata.var")

    counts = adata.layers["counts"] if "counts" in adata.layers else adata.X
    counts = counts.toarray() if hasattr(counts, "toarray") else np.asarray(counts)
    counts_df = pd.DataFrame(counts.T, index=adata.var_names, columns=adata.obs_names)

    labels, probs_df = classifier(counts_df, adata.var["entrez_id"].tolist())
    labels = labels.reindex(adata.obs_names)
    probs_df = probs_df.reindex(adata.obs_names)
    if labels.isna().any() or probs_df.isna().any().any():
        raise ValueError("Classifier did not return a result for every patient")

    adata = adata.copy()
    adata.obs["consensus_subtype"] = pd.Categorical(labels.to_numpy())
    adata.obs["consensus_probability"] = probs_df.max(axis=1).to_numpy()
    adata.obsm["consensus_probs"] = probs_df

    print("Consensus subtype counts:")
    print(adata.obs["consensus_subtype"].value_counts().to_string())

    return adata


def filter_confident(adata, min_probability=CONSENSUS_PARAMS["min_probability"]):
    """Keep patients whose maximum class probability is >= `min_probability`

    Args:
        adata: AnnData after `classify_consensus`
        min_probability: Confidence threshold

    Returns:
        Filtered copy
    """
    if "consensus_probability" not in adata.obs:
        raise KeyError("'consensus_probability' not found in adata.obs")

    keep = (adata.obs["consensus_probability"] >= min_probability).to_numpy()
    print(
        f"Consensus filter (>= {min_probability}): "
        f"keeping {keep.sum():,} / {adata.n_obs:,} patients"
    )
    if not keep.any():
        raise ValueError(f"No patients with class probability >= {min_probability}")

    confident = adata[keep].copy()
    check_alignment(confident)

    return confident


def compare_labels(nmf_labels, consensus_labels, save_dir=None):
    """Cross-tabulate NMF subtypes against consensus subtypes.

    Read-only: neither label is changed. Only patients carrying both labels
    are counted.

    Args:
        nmf_labels: Series of NMF subtype labels indexed by patient
        consensus_labels: Series of consensus labels indexed by patient
        save_dir: Optional Path to save the contingency table

    Returns:
        Tuple of (contingency DataFrame, adjusted Rand index)
    """
    shared = nmf_labels.index.intersection(consensus_labels.index)
    if len(shared) == 0:
        print("No patients carry both labels; skipping comparison")
        return pd.DataFrame(), float("nan")

    nmf = nmf_labels.loc[shared].astype(str).rename("nmf_subtype")
    cons = consensus_labels.loc[shared].astype(str).rename("consensus_subtype")

    table = pd.crosstab(nmf, cons)
    ari = float(adjusted_rand_score(nmf, cons))
    print(f"NMF vs consensus on {len(shared):,} patients (ARI = {ari:.3f}):")
    print(table.to_string())

    if save_dir is not None:
        out_csv = save_dir / "cluster_vs_consensus.csv"
        table.to_csv(out_csv)
        print(f"  Saved: {out_csv}")

    return table, ari
