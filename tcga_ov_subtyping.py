#!/usr/bin/env python3
"""
TCGA-OV molecular subtyping with NMF and consensusOV cross-validation

This script performs:
1. GDC download of STAR-Counts RNA-seq and clinical data (cached)
2. Assembly of aligned clinical, gene and count tables
3. Gene detection filtering, normalization and variable gene selection
4. NMF clustering with silhouette filtering, kNN graph and UMAP
5. Marker genes per cluster and subtype naming
6. consensusOV classification and export of confident patients

uv run python tcga_ov_subtyping.py --cache-dir data --output-dir outputs
"""

import warnings
import argparse
import matplotlib
import scanpy as sc
from pathlib import Path

from tcga_ov.data_loader import (
    fetch_cohort,
    load_cached_cohort,
    load_count_matrix,
    assemble_adata,
)
from tcga_ov.annotation import clean_gene_ids, map_ensembl_to_entrez
from tcga_ov.qc_utils import check_alignment, filter_genes_by_detection
from tcga_ov.processing import (
    normalize_counts,
    select_variable_genes,
    assign_cluster_labels,
    embed_clusters,
    plot_embeddings,
)
from tcga_ov.nmf_clustering import (
    run_nmf,
    compute_silhouette,
    filter_by_silhouette,
    plot_silhouette,
)
from tcga_ov.differential_expression import (
    compute_cluster_markers,
    marker_gene_ids,
    rename_clusters,
    plot_marker_genes,
)
from tcga_ov.consensus import classify_consensus, filter_confident, compare_labels
from tcga_ov.export import export_consensus_labels, export_marker_counts
from tcga_ov.params import SUBTYPE_NAMES, get_param_summary

# Configure scanpy
sc.settings.verbosity = 2
sc.settings.set_figure_params(dpi=80, facecolor="white")

# Suppress warnings
warnings.filterwarnings("ignore")


def main(cache_dir="data", output_dir="outputs", plots_dir_path="plots", skip_download=False):
    """Main analysis pipeline

    Args:
        cache_dir: Directory holding the GDC downloads.
        output_dir: Directory for CSV and h5ad outputs.
        plots_dir_path: Directory where plots will be saved.
        skip_download: Reuse a previously downloaded cohort without querying GDC.
    """
    print("Starting TCGA-OV subtyping pipeline...")

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    plots_dir = Path(plots_dir_path)
    plots_dir.mkdir(parents=True, exist_ok=True)
    print(f"Outputs will be saved to: {output_dir.absolute()}")
    print(f"Plots will be saved to: {plots_dir.absolute()}")

    # Set matplotlib backend to non-interactive for save-only mode
    matplotlib.use("Agg")

    print("\n" + get_param_summary() + "\n")

    # Step 1: Acquire data
    if skip_download:
        manifest, clinical = load_cached_cohort(cache_dir)
    else:
        manifest, clinical = fetch_cohort(cache_dir)

    # Step 2: Assemble aligned tables
    counts_df, genes_df = load_count_matrix(manifest)
    mapping = map_ensembl_to_entrez(clean_gene_ids(genes_df.index).unique())
    adata = assemble_adata(counts_df, genes_df, clinical, mapping)
    check_alignment(adata)
    adata.write(output_dir / "assembled.h5ad")
    print(f"  Saved: {output_dir}/assembled.h5ad")

    # Step 3: Gene detection filter
    adata = filter_genes_by_detection(adata)

    # Step 4: Normalize and select variable genes
    adata_norm = normalize_counts(adata)
    adata_hvg = select_variable_genes(adata_norm)

    # Step 5: NMF and silhouette filter
    adata_nmf = run_nmf(adata_hvg)
    adata_nmf = assign_cluster_labels(adata_nmf)
    adata_nmf = compute_silhouette(adata_nmf)
    plot_silhouette(adata_nmf, save_dir=plots_dir)
    retained = filter_by_silhouette(adata_nmf)

    # Step 6: kNN graph and UMAP
    retained = embed_clusters(retained)

    # Step 7: Marker genes over all detected genes
    markers_df = compute_cluster_markers(adata_norm, retained.obs["nmf_cluster"])
    labelled = adata_norm[retained.obs_names].copy()
    labelled.obs["nmf_cluster"] = retained.obs["nmf_cluster"]
    plot_marker_genes(labelled, markers_df, save_dir=plots_dir)

    # Step 8: Name subtypes
    retained = rename_clusters(retained, SUBTYPE_NAMES)
    markers_df["subtype"] = markers_df["group"].astype(str).map(SUBTYPE_NAMES)
    markers_df.to_csv(output_dir / "cluster_markers.csv", index=False)
    print(f"  Saved: {output_dir}/cluster_markers.csv")
    plot_embeddings(retained, save_dir=plots_dir)
    retained.write(output_dir / "nmf_clustered.h5ad")
    print(f"  Saved: {output_dir}/nmf_clustered.h5ad")

    # Step 9: consensusOV on the detection-filtered count matrix
    classified = classify_consensus(adata)
    confident = filter_confident(classified)
    compare_labels(
        retained.obs["nmf_subtype"],
        confident.obs["consensus_subtype"],
        save_dir=output_dir,
    )

    # Step 10: Export
    print("\nExporting results...")
    export_consensus_labels(confident, output_dir / "consensus_labels.csv")
    export_marker_counts(
        confident, marker_gene_ids(markers_df), output_dir / "counts.csv"
    )

    print("Analysis complete!")
    return retained, confident, markers_df


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="TCGA-OV NMF subtyping with consensusOV cross-validation"
    )
    parser.add_argument(
        "--cache-dir",
        default="data",
        help="Directory for GDC downloads (default: 'data')",
    )
    parser.add_argument(
        "--output-dir",
        default="outputs",
        help="Directory to write CSV and h5ad outputs to (default: 'outputs')",
    )
    parser.add_argument(
        "--plots-dir",
        default="plots",
        help="Directory to write plots to (default: 'plots')",
    )
    parser.add_argument(
        "--skip-download",
        action="store_true",
        help="Reuse the cached cohort in --cache-dir without querying GDC",
    )
    args = parser.parse_args()

    main(
        cache_dir=args.cache_dir,
        output_dir=args.output_dir,
        plots_dir_path=args.plots_dir,
        skip_download=args.skip_download,
    )
