#!/usr/bin/env python3
"""
Quality control utilities for TCGA-OV RNA-seq analysis
Handles gene detection filtering and table alignment checks
"""

import scanpy as sc

from tcga_ov.params import GENE_FILTERS


def check_alignment(adata):
    """Check that the clinical table, gene table and counts are aligned

    Args:
        adata: AnnData object (patients x genes)

    Returns:
        True, or raises ValueError describing the first violation
    """
    if not adata.var_names.is_unique:
        dupes = adata.var_names[adata.var_names.duplicated()].unique().tolist()
        raise ValueError(f"Gene ids are not unique: {dupes[:5]}")

    if not adata.obs_names.is_unique:
        dupes = adata.obs_names[adata.obs_names.duplicated()].unique().tolist()
        raise ValueError(f"Patient ids are not unique: {dupes[:5]}")

    if adata.X.shape != (len(adata.obs), len(adata.var)):
        raise ValueError(
            f"Count matrix shape {adata.X.shape} does not match "
            f"{len(adata.obs)} patients x {len(adata.var)} genes"
        )

    for name, layer in adata.layers.items():
        if layer.shape != adata.X.shape:
            raise ValueError(f"Layer '{name}' shape {layer.shape} != {adata.X.shape}")

    return True


def check_table_alignment(counts_df, genes_df, clinical_df):
    """Check the three-table form: counts rows == gene keys, columns == patient keys.

    Args:
        counts_df: Count matrix (genes x patients)
        genes_df: Gene table indexed by gene id
        clinical_df: Clinical table indexed by patient

    Returns:
        True, or raises ValueError
    """
    if not genes_df.index.is_unique:
        raise ValueError("Gene table ids are not unique")

    if not counts_df.index.equals(genes_df.index):
        raise ValueError(
            f"Count matrix rows ({counts_df.shape[0]}) do not match "
            f"gene table keys ({len(genes_df)})"
        )

    if not counts_df.columns.equals(clinical_df.index):
        raise ValueError(
            f"Count matrix columns ({counts_df.shape[1]}) do not match "
            f"clinical table keys ({len(clinical_df)})"
        )

    return True


def filter_genes_by_detection(adata, min_patients=GENE_FILTERS["min_patients"]):
    """Keep genes with a nonzero count in at least `min_patients` patients

    No patient-level filter is applied.

    Args:
        adata: AnnData object with raw counts
        min_patients: Minimum patients detecting a gene

    Returns:
        Filtered copy of the AnnData object
    """
    print("Applying gene detection filter...")
    print(f"Starting with {adata.n_obs} patients and {adata.n_vars} genes")

    adata = adata.copy()

    # Filter genes detected in at least min_patients
    sc.pp.filter_genes(adata, min_cells=min_patients)
    adata.var = adata.var.rename(columns={"n_cells": "n_patients"})

    if adata.n_vars == 0:
        raise ValueError(f"No genes detected in at least {min_patients} patients")

    check_alignment(adata)
    print(f"After filtering: {adata.n_obs} patients and {adata.n_vars} genes")

    return adata
