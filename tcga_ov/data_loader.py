#!/usr/bin/env python3
"""
Data loading utilities for TCGA-OV RNA-seq analysis
Handles GDC queries, cached downloads, STAR-Counts parsing and AnnData assembly
"""

import io
import json
import tarfile
from pathlib import Path

import anndata
import numpy as np
import pandas as pd
import requests

from tcga_ov.params import GDC_QUERY, GDC_ENDPOINTS
from tcga_ov.annotation import clean_gene_ids, deduplicate_genes
from tcga_ov.qc_utils import check_table_alignment

RNA_FIELDS = [
    "file_id",
    "file_name",
    "cases.case_id",
    "cases.submitter_id",
    "cases.samples.sample_type",
    "cases.samples.submitter_id",
]

CLINICAL_EXPAND = ["demographic", "diagnoses", "exposures", "project"]


def build_rna_filters(query=GDC_QUERY):
    """Build the GDC filter payload for the transcriptomic files of the cohort"""
    clauses = [
        ("cases.project.project_id", query["project_id"]),
        ("data_category", query["data_category"]),
        ("data_type", query["data_type"]),
        ("analysis.workflow_type", query["workflow_type"]),
        ("cases.samples.sample_type", query["sample_type"]),
        ("access", "open"),
    ]
    return {
        "op": "and",
        "content": [
            {"op": "in", "content": {"field": field, "value": [value]}}
            for field, value in clauses
        ],
    }


def build_clinical_filters(query=GDC_QUERY):
    """Build the GDC filter payload for the case records of the cohort"""
    return {
        "op": "in",
        "content": {"field": "project.project_id", "value": [query["project_id"]]},
    }


def _fetch_all_hits(session, endpoint, params):
    """Page through a GDC search endpoint and return every hit"""
    hits = []
    offset = 0
    while True:
        page_params = dict(params, size=GDC_ENDPOINTS["page_size"], **{"from": offset})
        response = session.get(
            endpoint, params=page_params, timeout=GDC_ENDPOINTS["timeout"]
        )
        response.raise_for_status()

        data = response.json()["data"]
        hits.extend(data["hits"])
        total = data["pagination"]["total"]
        offset += len(data["hits"])
        if not data["hits"] or offset >= total:
            break

    return hits


def query_rna_files(session=None, query=GDC_QUERY):
    """Query the GDC files endpoint for the cohort's STAR-Counts files.

    Keeps one file per patient: the first by sample submitter id.

    Args:
        session: Optional requests.Session
        query: GDC query dictionary

    Returns:
        Manifest DataFrame (file_id, file_name, case_id, submitter_id,
        sample_type, sample_submitter_id)
    """
    print(f"Querying GDC for {query['project_id']} RNA files...")
    session = session or requests.Session()

    params = {
        "filters": json.dumps(build_rna_filters(query)),
        "fields": ",".join(RNA_FIELDS),
        "format": "JSON",
    }
    hits = _fetch_all_hits(session, GDC_ENDPOINTS["files"], params)

    rows = []
    for h in hits:
        row = {"file_id": h["file_id"], "file_name": h.get("file_name", "")}
        # Flatten nested case/sample info
        cases = h.get("cases", [])
        if cases:
            case = cases[0]
            row["case_id"] = case.get("case_id", "")
            row["submitter_id"] = case.get("submitter_id", "")
            samples = case.get("samples", [])
            if samples:
                row["sample_type"] = samples[0].get("sample_type", "")
                row["sample_submitter_id"] = samples[0].get("submitter_id", "")
        rows.append(row)

    manifest = pd.DataFrame(
        rows,
        columns=[
            "file_id",
            "file_name",
            "case_id",
            "submitter_id",
            "sample_type",
            "sample_submitter_id",
        ],
    )
    manifest = manifest[manifest["sample_type"] == query["sample_type"]]
    manifest = manifest.sort_values(["submitter_id", "sample_submitter_id"])
    manifest = manifest.drop_duplicates(subset="submitter_id", keep="first")
    manifest = manifest.reset_index(drop=True)

    print(f"  Found {len(hits):,} files, {len(manifest):,} patients")

    return manifest


def query_clinical(session=None, query=GDC_QUERY):
    """Query the GDC cases endpoint for the cohort's clinical records.

    Returns:
        List of case records (nested dictionaries)
    """
    print(f"Querying GDC for {query['project_id']} clinical data...")
    session = session or requests.Session()

    params = {
        "filters": json.dumps(build_clinical_filters(query)),
        "expand": ",".join(CLINICAL_EXPAND),
        "format": "JSON",
    }
    hits = _fetch_all_hits(session, GDC_ENDPOINTS["cases"], params)
    print(f"  Found {len(hits):,} cases")

    return hits


def flatten_clinical(records):
    """Flatten case records into a patient table.

    Nested objects become dotted columns; list-valued columns are removed.

    Args:
        records: List of GDC case records

    Returns:
        DataFrame indexed by patient (case submitter id)
    """
    clinical = pd.json_normalize(records)

    list_cols = [
        col
        for col in clinical.columns
        if clinical[col].map(lambda v: isinstance(v, (list, dict))).any()
    ]
    if list_cols:
        print(f"  Removing list-valued clinical columns: {', '.join(list_cols)}")
        clinical = clinical.drop(columns=list_cols)

    clinical = clinical.drop_duplicates(subset="submitter_id", keep="first")
    clinical = clinical.set_index("submitter_id")
    clinical.index.name = "patient"

    return stringify_object_columns(clinical)


def stringify_object_columns(clinical):
    """Cast mixed-type object columns to strings, keeping missing values.

    h5ad needs homogeneous object columns; a boolean field with gaps comes
    back from GDC (or from a re-read TSV) as bools mixed with NaN.
    """
    clinical = clinical.copy()
    for col in clinical.columns:
        if clinical[col].dtype == object:
            clinical[col] = clinical[col].map(lambda v: v if pd.isna(v) else str(v))
    return clinical


def rna_file_path(cache_dir, file_id, file_name):
    """Location of a downloaded RNA file inside the cache"""
    return Path(cache_dir) / "rna" / file_id / file_name


def download_files(manifest, cache_dir, session=None):
    """Download RNA files that are not yet cached.

    Batches are fetched from the GDC data endpoint; multi-file batches arrive
    as a tar.gz archive laid out as <file_id>/<file_name>.

    Args:
        manifest: Manifest from `query_rna_files`
        cache_dir: Local cache directory
        session: Optional requests.Session

    Returns:
        Manifest with a `path` column
    """
    session = session or requests.Session()
    cache_dir = Path(cache_dir)
    rna_dir = cache_dir / "rna"
    rna_dir.mkdir(parents=True, exist_ok=True)

    manifest = manifest.copy()
    manifest["path"] = [
        rna_file_path(cache_dir, fid, fname)
        for fid, fname in zip(manifest["file_id"], manifest["file_name"])
    ]
    missing = manifest[~manifest["path"].map(Path.exists)]
    print(
        f"Downloading {len(missing):,} RNA files "
        f"({len(manifest) - len(missing):,} cached)..."
    )

    batch_size = GDC_ENDPOINTS["download_batch"]
    for start in range(0, len(missing), batch_size):
        batch = missing.iloc[start : start + batch_size]
        response = session.post(
            GDC_ENDPOINTS["data"],
            data=json.dumps({"ids": batch["file_id"].tolist()}),
            headers={"Content-Type": "application/json"},
            timeout=GDC_ENDPOINTS["timeout"],
        )
        response.raise_for_status()

        if len(batch) == 1:
            out_path = batch["path"].iloc[0]
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_bytes(response.content)
        else:
            with tarfile.open(fileobj=io.BytesIO(response.content), mode="r:gz") as tar:
                members = [m for m in tar.getmembers() if m.name != "MANIFEST.txt"]
                tar.extractall(rna_dir, members=members, filter="data")
        print(f"  Downloaded {min(start + batch_size, len(missing)):,}/{len(missing):,}")

    manifest_path = cache_dir / "manifest_rna.tsv"
    manifest.drop(columns="path").to_csv(manifest_path, sep="\t", index=False)
    print(f"  Saved: {manifest_path}")

    return manifest


def fetch_cohort(cache_dir, session=None):
    """Query and cache the cohort's RNA files and clinical table.

    Args:
        cache_dir: Local cache directory

    Returns:
        Tuple of (manifest with paths, clinical DataFrame)
    """
    session = session or requests.Session()
    cache_dir = Path(cache_dir)
    cache_dir.mkdir(parents=True, exist_ok=True)

    manifest = query_rna_files(session=session)
    manifest = download_files(manifest, cache_dir, session=session)

    clinical = flatten_clinical(query_clinical(session=session))
    clinical_path = cache_dir / "clinical.tsv"
    clinical.to_csv(clinical_path, sep="\t")
    print(f"  Saved: {clinical_path}")

    return manifest, clinical


def load_cached_cohort(cache_dir):
    """Load a cohort previously written by `fetch_cohort`"""
    cache_dir = Path(cache_dir)
    manifest = pd.read_csv(cache_dir / "manifest_rna.tsv", sep="\t")
    manifest["path"] = [
        rna_file_path(cache_dir, fid, fname)
        for fid, fname in zip(manifest["file_id"], manifest["file_name"])
    ]
    clinical = pd.read_csv(cache_dir / "clinical.tsv", sep="\t", index_col=0)
    clinical = stringify_object_columns(clinical)
    print(f"Loaded cached cohort: {len(manifest):,} RNA files, {len(clinical):,} cases")

    return manifest, clinical


def load_star_counts(file_path, count_column=GDC_QUERY["count_column"]):
    """Load one STAR-Counts file

    Args:
        file_path: Path to the augmented STAR gene counts TSV

    Returns:
        Tuple of (counts Series indexed by versioned gene id,
        gene DataFrame with gene_name and gene_type)
    """
    table = pd.read_csv(file_path, sep="\t", comment="#")
    table = table[~table["gene_id"].astype(str).str.startswith("N_")]
    table = table.set_index("gene_id")

    counts = table[count_column].astype(np.int64)
    genes = table[["gene_name", "gene_type"]]

    return counts, genes


def load_count_matrix(manifest):
    """Load every STAR-Counts file of a manifest into one matrix

    Args:
        manifest: Manifest with `path` and `submitter_id`

    Returns:
        Tuple of (counts DataFrame genes x patients, gene DataFrame)
    """
    print(f"Loading {len(manifest):,} STAR-Counts files...")

    columns = {}
    genes = None
    for path, patient in zip(manifest["path"], manifest["submitter_id"]):
        counts, file_genes = load_star_counts(path)
        if genes is None:
            genes = file_genes
        elif not counts.index.equals(genes.index):
            raise ValueError(f"Gene ids in {path} differ from the first file")
        columns[patient] = counts

    if genes is None:
        raise ValueError("Manifest has no RNA files")

    counts_df = pd.DataFrame(columns, index=genes.index)
    counts_df.columns.name = "patient"
    print(f"  Count matrix: {counts_df.shape[0]:,} genes x {counts_df.shape[1]:,} patients")

    return counts_df, genes


def assemble_adata(counts_df, genes_df, clinical_df, mapping_df):
    """Build one aligned AnnData from the count matrix, gene and clinical tables.

    Gene ids are cleaned and deduplicated (first occurrence kept), genes
    without an Entrez mapping are dropped, and patients without a clinical
    record are dropped. All joins are keyed, so obs, var and X stay aligned.

    Args:
        counts_df: Counts, genes (versioned ids) x patients
        genes_df: Gene table indexed by versioned id
        clinical_df: Clinical table indexed by patient
        mapping_df: Output of `map_ensembl_to_entrez`

    Returns:
        AnnData (patients x genes) with raw counts in X and layers["counts"]
    """
    print("Assembling AnnData...")

    genes = deduplicate_genes(genes_df)
    genes = genes.join(mapping_df, how="inner")
    print(f"  Genes with Entrez mapping: {len(genes):,}")

    counts = counts_df.copy()
    counts.index = clean_gene_ids(counts.index)
    counts = counts[~counts.index.duplicated(keep="first")]
    counts = counts.loc[genes.index]

    patients = [p for p in counts.columns if p in clinical_df.index]
    n_dropped = counts.shape[1] - len(patients)
    if n_dropped:
        print(f"  Dropping {n_dropped:,} patients without clinical records")
    if not patients:
        raise ValueError("No patients shared between counts and clinical table")

    obs = clinical_df.loc[patients].copy()
    obs.index = obs.index.astype(str)
    obs.index.name = "patient"
    var = genes.copy()
    var.index.name = "gene_id"
    counts = counts.loc[:, patients]
    counts.columns = counts.columns.astype(str)
    check_table_alignment(counts, var, obs)

    X = counts.to_numpy(dtype=np.int64).T
    adata = anndata.AnnData(X=X, obs=obs, var=var)
    adata.layers["counts"] = adata.X.copy()

    print(f"  Assembled: {adata.n_obs:,} patients x {adata.n_vars:,} genes")

    return adata
