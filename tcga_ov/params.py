#!/usr/bin/env python3
"""
Analysis parameters for the TCGA-OV NMF subtyping pipeline

This file centralizes all thresholds used in the pipeline.
Modify these values to adjust filtering stringency.
"""

# GDC query for the cohort
GDC_QUERY = {
    "project_id": "TCGA-OV",
    "data_category": "Transcriptome Profiling",
    "data_type": "Gene Expression Quantification",
    "workflow_type": "STAR - Counts",
    "sample_type": "Primary Tumor",
    "count_column": "unstranded",  # STAR-Counts column holding raw counts
}

GDC_ENDPOINTS = {
    "files": "https://api.gdc.cancer.gov/files",
    "cases": "https://api.gdc.cancer.gov/cases",
    "data": "https://api.gdc.cancer.gov/data",
    "timeout": 120,
    "page_size": 2000,
    "download_batch": 50,
}

# Gene-level filters
GENE_FILTERS = {
    "min_patients": 10,  # Minimum patients with a nonzero count
}

# Normalization and feature selection
FEATURE_PARAMS = {
    "target_sum": None,  # None = normalize to the median library size
    "n_top_genes": 5000,
    "flavor": "seurat",
}

# NMF clustering
# min_silhouette was picked from the silhouette profile plot; re-check it
# whenever the input data changes.
NMF_PARAMS = {
    "rank": 4,
    "n_runs": 100,
    "max_iter": 1000,
    "init": "random",
    "random_state": 123456,
    "min_silhouette": 0.3,
}

# kNN graph / UMAP over the mixture coefficients
EMBEDDING_PARAMS = {
    "n_neighbors": 4,
    "label_prefix": "C",
}

# Marker genes
DE_PARAMS = {
    "method": "wilcoxon",
    "n_top": 50,
    "pval_adj_cutoff": 0.05,
}

# Cluster -> subtype names, chosen after inspecting the marker dotplot
SUBTYPE_NAMES = {
    "C1": "Immunoreactive",
    "C2": "Differentiated",
    "C3": "Proliferative",
    "C4": "Mesenchymal",
}

# consensusOV classifier
CONSENSUS_PARAMS = {
    "method": "consensusOV",
    "min_probability": 0.5,
    "labels": ["IMR_consensus", "DIF_consensus", "PRO_consensus", "MES_consensus"],
}


def get_param_summary():
    """Return a formatted summary of current parameter settings"""
    summary = [
        "=== Pipeline Settings ===",
        f"\nCohort: {GDC_QUERY['project_id']} ({GDC_QUERY['workflow_type']})",
        "\nGene-level filters:",
        f"  - Min patients with nonzero count: {GENE_FILTERS['min_patients']}",
        "\nFeature selection:",
        f"  - Highly variable genes: {FEATURE_PARAMS['n_top_genes']}",
        "\nNMF:",
        f"  - Rank: {NMF_PARAMS['rank']}",
        f"  - Runs: {NMF_PARAMS['n_runs']}",
        f"  - Min silhouette: {NMF_PARAMS['min_silhouette']}",
        f"  - kNN neighbors: {EMBEDDING_PARAMS['n_neighbors']}",
        "\nConsensus classifier:",
        f"  - Min class probability: {CONSENSUS_PARAMS['min_probability']}",
    ]

    return "\n".join(summary)


# Validation function
def validate_params():
    """Validate that parameters make sense"""
    errors = []

    if GENE_FILTERS["min_patients"] < 1:
        errors.append("min_patients must be at least 1")

    if FEATURE_PARAMS["n_top_genes"] < NMF_PARAMS["rank"]:
        errors.append("n_top_genes must be at least the NMF rank")

    if NMF_PARAMS["rank"] < 2:
        errors.append("NMF rank must be at least 2")

    if NMF_PARAMS["n_runs"] < 1:
        errors.append("n_runs must be at least 1")

    if not -1 <= NMF_PARAMS["min_silhouette"] <= 1:
        errors.append("min_silhouette must be between -1 and 1")

    if not 0 <= CONSENSUS_PARAMS["min_probability"] <= 1:
        errors.append("min_probability must be between 0 and 1")

    expected = {
        f"{EMBEDDING_PARAMS['label_prefix']}{i + 1}" for i in range(NMF_PARAMS["rank"])
    }
    if set(SUBTYPE_NAMES) != expected:
        errors.append(f"SUBTYPE_NAMES keys must be {sorted(expected)}")

    if len(set(SUBTYPE_NAMES.values())) != len(SUBTYPE_NAMES):
        errors.append("SUBTYPE_NAMES values must be unique")

    if errors:
        raise ValueError("Parameter validation failed:\n" + "\n".join(errors))

    return True


# Run validation on import
validate_params()
