#!/usr/bin/env python3
"""
Gene annotation utilities for TCGA RNA-seq tables
Handles Ensembl id cleaning, deduplication, and Ensembl -> Entrez mapping
"""

import re

import mygene
import numpy as np
import pandas as pd

# GENCODE ids carry a version suffix, and PAR_Y copies an extra tag
VERSION_PATTERN = re.compile(r"\.\d+(_PAR_Y)?$")


def clean_gene_ids(gene_ids):
    """Strip the version suffix from Ensembl gene ids.

    Args:
        gene_ids: Iterable of ids such as "ENSG00000000003.15"

    Returns:
        pandas Index of cleaned ids ("ENSG00000000003"), same order
    """
    return pd.Index([VERSION_PATTERN.sub("", str(g)) for g in gene_ids], name="gene_id")


def deduplicate_genes(genes_df):
    """Re-key a gene table by cleaned id, keeping the first occurrence.

    Args:
        genes_df: DataFrame indexed by versioned Ensembl id

    Returns:
        DataFrame indexed by unique cleaned id with a `gene_id_version` column
    """
    genes = genes_df.copy()
    genes["gene_id_version"] = genes.index.astype(str)
    genes.index = clean_gene_ids(genes.index)

    n_before = len(genes)
    genes = genes[~genes.index.duplicated(keep="first")]
    print(f"  Deduplicated gene ids: {n_before:,} -> {len(genes):,}")

    return genes


def map_ensembl_to_entrez(gene_ids, client=None, species="human"):
    """Map cleaned Ensembl gene ids to Entrez ids and symbols via mygene.info.

    Multiple hits for one query keep the first match. Ids without an Entrez
    id are dropped, and when several Ensembl ids share an Entrez id only the
    first Ensembl id keeps it, so the result is one-to-one.

    Args:
        gene_ids: Cleaned Ensembl ids
        client: Object with a mygene-compatible `querymany` (default: MyGeneInfo())
        species: Species passed to mygene

    Returns:
        DataFrame indexed by Ensembl id with int `entrez_id` and `symbol`
    """
    print("Mapping Ensembl ids to Entrez ids...")

    if client is None:
        client = mygene.MyGeneInfo()

    query_ids = list(dict.fromkeys(gene_ids))
    hits = client.querymany(
        query_ids,
        scopes="ensembl.gene",
        fields="entrezgene,symbol",
        species=species,
        returnall=False,
        verbose=False,
    )

    rows = []
    for hit in hits:
        if hit.get("notfound") or "entrezgene" not in hit:
            continue
        rows.append(
            {
                "gene_id": hit["query"],
                "entrez_id": hit["entrezgene"],
                "symbol": hit.get("symbol", np.nan),
            }
        )

    mapping = pd.DataFrame(rows, columns=["gene_id", "entrez_id", "symbol"])
    mapping["entrez_id"] = pd.to_numeric(mapping["entrez_id"], errors="coerce")
    mapping = mapping.dropna(subset=["entrez_id"])
    mapping = mapping.drop_duplicates(subset="gene_id", keep="first")
    mapping = mapping.drop_duplicates(subset="entrez_id", keep="first")
    mapping["entrez_id"] = mapping["entrez_id"].astype(np.int64)
    mapping = mapping.set_index("gene_id")

    print(f"  Mapped {len(mapping):,} / {len(query_ids):,} genes")

    return mapping


def annotate_symbols(gene_ids, var):
    """Look up gene symbols for a list of gene ids.

    Falls back to the GDC `gene_name` column, then to the id itself.

    Args:
        gene_ids: Gene ids (index values of `var`)
        var: Gene table with `symbol` and optionally `gene_name`

    Returns:
        List of symbols, same order as `gene_ids`
    """
    missing = [g for g in gene_ids if g not in var.index]
    if missing:
        raise KeyError(f"Gene ids not in gene table: {missing[:5]}")

    symbols = var.loc[list(gene_ids), "symbol"]
    if "gene_name" in var.columns:
        symbols = symbols.fillna(var.loc[list(gene_ids), "gene_name"])
    symbols = symbols.fillna(pd.Series(list(gene_ids), index=symbols.index))

    return symbols.astype(str).tolist()
