#!/usr/bin/env python3
"""
Export utilities for TCGA-OV RNA-seq analysis
Writes consensus labels and the marker-gene count matrix
"""

from pathlib import Path

import numpy as np
import pandas as pd

from tcga_ov.annotation import annotate_symbols


def export_consensus_labels(adata, out_path):
    """Write `consensus_labels.csv`: patient-indexed, one label column

    Args:
        adata: AnnData of confident patients with `obs["consensus_subtype"]`
        out_path: CSV path

    Returns:
        The written DataFrame
    """
    if "consensus_subtype" not in adata.obs:
        raise KeyError("'consensus_subtype' not found in adata.obs")

    labels = adata.obs[["consensus_subtype"]].copy()
    labels.index.name = "patient"

    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    labels.to_csv(out_path)
    print(f"  Saved: {out_path} ({len(labels):,} patients)")

    return labels


def marker_count_matrix(adata, marker_ids):
    """Integer counts of marker genes x patients, rows relabelled to symbols

    Row order follows `marker_ids`; column order follows `adata.obs_names`.

    Args:
        adata: AnnData with `layers["counts"]` (or raw counts in X)
        marker_ids: Gene ids of the marker set

    Returns:
        DataFrame indexed by gene symbol
    """
    marker_ids = list(dict.fromkeys(marker_ids))
    missing = [g for g in marker_ids if g not in adata.var_names]
    if missing:
        raise KeyError(f"Marker genes not in count matrix: {missing[:5]}")
    if not marker_ids:
        raise ValueError("Marker set is empty")

    sub = adata[:, marker_ids]
    counts = sub.layers["counts"] if "counts" in sub.layers else sub.X
    counts = counts.toarray() if hasattr(counts, "toarray") else np.asarray(counts)

    symbols = annotate_symbols(marker_ids, adata.var)
    matrix = pd.DataFrame(
        counts.T.astype(np.int64),
        index=pd.Index(symbols, name="symbol"),
        columns=pd.Index(adata.obs_names, name="patient"),
    )

    return matrix


def export_marker_counts(adata, marker_ids, out_path):
    """Write `counts.csv`: marker genes (symbols) x confident patients

    Returns:
        The written DataFrame
    """
    matrix = marker_count_matrix(adata, marker_ids)

    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    matrix.to_csv(out_path)
    print(f"  Saved: {out_path} ({matrix.shape[0]:,} genes x {matrix.shape[1]:,} patients)")

    return matrix


def read_marker_counts(path):
    """Read a `counts.csv` written by `export_marker_counts`"""
    # symbols such as "NA" are gene names, not missing values
    matrix = pd.read_csv(path, index_col=0, keep_default_na=False, na_values=[])
    matrix.index = matrix.index.astype(str)
    matrix.columns = matrix.columns.astype(str)
    return matrix
