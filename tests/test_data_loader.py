import io
import json
import tarfile

import anndata
import numpy as np
import pandas as pd
import pytest

from tcga_ov.data_loader import (
    assemble_adata,
    build_rna_filters,
    download_files,
    fetch_cohort,
    flatten_clinical,
    load_cached_cohort,
    load_count_matrix,
    load_star_counts,
    query_rna_files,
    rna_file_path,
)
from tcga_ov.params import GDC_ENDPOINTS
from tcga_ov.qc_utils import check_alignment

STAR_HEADER = "# gene-model: GENCODE v36\n"
STAR_COLUMNS = "gene_id\tgene_name\tgene_type\tunstranded\tstranded_first\tstranded_second\n"
STAR_SUMMARY = "".join(
    f"{name}\t\t\t{n}\t{n}\t{n}\n"
    for name, n in [("N_unmapped", 10), ("N_multimapping", 20), ("N_noFeature", 30), ("N_ambiguous", 40)]
)


def star_text(rows):
    body = "".join(
        f"{gid}\t{name}\tprotein_coding\t{count}\t0\t0\n" for gid, name, count in rows
    )
    return STAR_HEADER + STAR_COLUMNS + STAR_SUMMARY + body


def write_star_file(path, rows):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(star_text(rows))


def tar_gz(members):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for member, data in members:
            info = tarfile.TarInfo(member)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def file_hit(file_id, patient, sample, sample_type="Primary Tumor"):
    return {
        "file_id": file_id,
        "file_name": f"{file_id}.rna_seq.augmented_star_gene_counts.tsv",
        "cases": [
            {
                "case_id": f"case-{patient}",
                "submitter_id": patient,
                "samples": [{"sample_type": sample_type, "submitter_id": sample}],
            }
        ],
    }


def page(hits, total):
    return {"data": {"hits": hits, "pagination": {"total": total}}}


def test_rna_filters_carry_cohort_identifiers():
    filters = build_rna_filters()
    values = {c["content"]["field"]: c["content"]["value"] for c in filters["content"]}

    assert values["cases.project.project_id"] == ["TCGA-OV"]
    assert values["data_category"] == ["Transcriptome Profiling"]
    assert values["data_type"] == ["Gene Expression Quantification"]
    assert values["analysis.workflow_type"] == ["STAR - Counts"]


def test_query_rna_files_pages_and_keeps_one_file_per_patient(fake_session_cls):
    session = fake_session_cls(
        get_pages=[
            page([file_hit("f2", "TCGA-01", "TCGA-01-01B"), file_hit("f1", "TCGA-01", "TCGA-01-01A")], 4),
            page(
                [
                    file_hit("f3", "TCGA-02", "TCGA-02-01A"),
                    file_hit("f4", "TCGA-03", "TCGA-03-11A", sample_type="Solid Tissue Normal"),
                ],
                4,
            ),
        ]
    )

    manifest = query_rna_files(session=session)

    assert len(session.get_calls) == 2
    assert session.get_calls[1][1]["from"] == 2
    assert list(manifest["submitter_id"]) == ["TCGA-01", "TCGA-02"]
    assert manifest.loc[0, "file_id"] == "f1"


def test_flatten_clinical_drops_list_columns():
    records = [
        {
            "submitter_id": "TCGA-01",
            "demographic": {"gender": "female", "vital_status": "Dead"},
            "diagnoses": [{"primary_diagnosis": "Serous cystadenocarcinoma"}],
        },
        {
            "submitter_id": "TCGA-02",
            "demographic": {"gender": "female", "vital_status": "Alive"},
            "diagnoses": [],
        },
    ]

    clinical = flatten_clinical(records)

    assert list(clinical.index) == ["TCGA-01", "TCGA-02"]
    assert "diagnoses" not in clinical.columns
    assert clinical.loc["TCGA-02", "demographic.vital_status"] == "Alive"


def test_load_star_counts_skips_summary_rows(tmp_path):
    path = tmp_path / "a.tsv"
    write_star_file(path, [("ENSG1.1", "A", 5), ("ENSG2.3", "B", 0)])

    counts, genes = load_star_counts(path)

    assert list(counts.index) == ["ENSG1.1", "ENSG2.3"]
    assert list(counts) == [5, 0]
    assert genes.loc["ENSG2.3", "gene_name"] == "B"


def test_download_files_single_and_archive_batches(tmp_path, fake_session_cls):
    manifest = pd.DataFrame(
        {
            "file_id": ["f1", "f2"],
            "file_name": ["a.tsv", "b.tsv"],
            "submitter_id": ["TCGA-01", "TCGA-02"],
        }
    )

    archive = tar_gz([("MANIFEST.txt", b"id\n"), ("f1/a.tsv", b"one"), ("f2/b.tsv", b"two")])

    session = fake_session_cls(post_contents=[archive])
    result = download_files(manifest, tmp_path, session=session)

    assert rna_file_path(tmp_path, "f1", "a.tsv").read_bytes() == b"one"
    assert rna_file_path(tmp_path, "f2", "b.tsv").read_bytes() == b"two"
    assert json.loads(session.post_calls[0][1]) == {"ids": ["f1", "f2"]}
    assert (tmp_path / "manifest_rna.tsv").exists()
    assert list(result["path"]) == [
        rna_file_path(tmp_path, "f1", "a.tsv"),
        rna_file_path(tmp_path, "f2", "b.tsv"),
    ]

    # Cached files are not downloaded again
    rna_file_path(tmp_path, "f2", "b.tsv").unlink()
    session = fake_session_cls(post_contents=[b"again"])
    download_files(manifest, tmp_path, session=session)
    assert json.loads(session.post_calls[0][1]) == {"ids": ["f2"]}
    assert rna_file_path(tmp_path, "f2", "b.tsv").read_bytes() == b"again"


def test_load_count_matrix_columns_follow_manifest(tmp_path):
    rows_a = [("ENSG1.1", "A", 1), ("ENSG2.1", "B", 2)]
    rows_b = [("ENSG1.1", "A", 3), ("ENSG2.1", "B", 4)]
    write_star_file(tmp_path / "a.tsv", rows_a)
    write_star_file(tmp_path / "b.tsv", rows_b)
    manifest = pd.DataFrame(
        {"path": [tmp_path / "b.tsv", tmp_path / "a.tsv"], "submitter_id": ["TCGA-02", "TCGA-01"]}
    )

    counts_df, genes = load_count_matrix(manifest)

    assert list(counts_df.columns) == ["TCGA-02", "TCGA-01"]
    assert counts_df.loc["ENSG2.1", "TCGA-01"] == 2
    assert list(genes.index) == ["ENSG1.1", "ENSG2.1"]


def test_load_count_matrix_rejects_mismatched_genes(tmp_path):
    write_star_file(tmp_path / "a.tsv", [("ENSG1.1", "A", 1)])
    write_star_file(tmp_path / "b.tsv", [("ENSG9.1", "Z", 1)])
    manifest = pd.DataFrame(
        {"path": [tmp_path / "a.tsv", tmp_path / "b.tsv"], "submitter_id": ["TCGA-01", "TCGA-02"]}
    )
    with pytest.raises(ValueError):
        load_count_matrix(manifest)


def test_assemble_adata_keyed_alignment():
    gene_index = ["ENSG1.1", "ENSG2.4", "ENSG2.4_PAR_Y", "ENSG3.2"]
    genes_df = pd.DataFrame(
        {"gene_name": ["A", "B", "B_Y", "C"], "gene_type": ["protein_coding"] * 4},
        index=gene_index,
    )
    counts_df = pd.DataFrame(
        {
            "TCGA-03": [1, 2, 99, 3],
            "TCGA-01": [4, 5, 98, 6],
            "TCGA-02": [7, 8, 97, 9],
        },
        index=gene_index,
    )
    clinical_df = pd.DataFrame(
        {"age": [60, 70]}, index=pd.Index(["TCGA-01", "TCGA-03"], name="patient")
    )
    mapping_df = pd.DataFrame(
        {"entrez_id": np.array([11, 22], dtype=np.int64), "symbol": ["SA", "SB"]},
        index=pd.Index(["ENSG2", "ENSG1"], name="gene_id"),
    )

    adata = assemble_adata(counts_df, genes_df, clinical_df, mapping_df)

    assert check_alignment(adata)
    assert list(adata.obs_names) == ["TCGA-03", "TCGA-01"]
    assert list(adata.var_names) == ["ENSG1", "ENSG2"]
    assert list(adata.var["entrez_id"]) == [22, 11]
    assert adata.obs.loc["TCGA-01", "age"] == 60
    np.testing.assert_array_equal(adata.X, np.array([[1, 2], [4, 5]]))
    np.testing.assert_array_equal(adata.layers["counts"], adata.X)


def test_assemble_adata_without_shared_patients_raises():
    genes_df = pd.DataFrame({"gene_name": ["A"], "gene_type": ["x"]}, index=["ENSG1.1"])
    counts_df = pd.DataFrame({"TCGA-01": [1]}, index=["ENSG1.1"])
    clinical_df = pd.DataFrame({"age": [1]}, index=["TCGA-99"])
    mapping_df = pd.DataFrame({"entrez_id": [1], "symbol": ["A"]}, index=["ENSG1"])
    with pytest.raises(ValueError):
        assemble_adata(counts_df, genes_df, clinical_df, mapping_df)


def test_fetch_cohort_then_cached_reload_writes_h5ad(tmp_path, fake_session_cls):
    hits = [file_hit("f1", "TCGA-01", "TCGA-01-01A"), file_hit("f2", "TCGA-02", "TCGA-02-01A")]
    rows = {
        "f1": [("ENSG1.1", "A", 5), ("ENSG2.1", "B", 7)],
        "f2": [("ENSG1.1", "A", 3), ("ENSG2.1", "B", 0)],
    }
    archive = tar_gz(
        [(f"{h['file_id']}/{h['file_name']}", star_text(rows[h["file_id"]]).encode()) for h in hits]
    )
    records = [
        {
            "submitter_id": "TCGA-01",
            "demographic": {"gender": "female", "age_is_obfuscated": True},
            "diagnoses": [{"primary_diagnosis": "Serous cystadenocarcinoma"}],
        },
        {"submitter_id": "TCGA-02", "demographic": {"gender": "female"}},
    ]
    session = fake_session_cls(
        get_pages=[page(hits, 2), page(records, 2)],
        post_contents=[archive],
    )
    mapping_df = pd.DataFrame(
        {"entrez_id": np.array([11, 22], dtype=np.int64), "symbol": ["SA", "SB"]},
        index=pd.Index(["ENSG1", "ENSG2"], name="gene_id"),
    )

    manifest, clinical = fetch_cohort(tmp_path, session=session)

    assert session.get_calls[1][0] == GDC_ENDPOINTS["cases"]
    assert "demographic" in session.get_calls[1][1]["expand"]
    assert (tmp_path / "clinical.tsv").exists()
    assert clinical.loc["TCGA-01", "demographic.age_is_obfuscated"] == "True"

    cached_manifest, cached_clinical = load_cached_cohort(tmp_path)

    assert list(cached_manifest["path"]) == list(manifest["path"])
    assert cached_clinical.loc["TCGA-01", "demographic.age_is_obfuscated"] == "True"
    assert pd.isna(cached_clinical.loc["TCGA-02", "demographic.age_is_obfuscated"])

    counts_df, genes_df = load_count_matrix(cached_manifest)
    adata = assemble_adata(counts_df, genes_df, cached_clinical, mapping_df)
    adata.write(tmp_path / "assembled.h5ad")

    reloaded = anndata.read_h5ad(tmp_path / "assembled.h5ad")
    assert list(reloaded.obs_names) == ["TCGA-01", "TCGA-02"]
    assert reloaded.obs.loc["TCGA-01", "demographic.age_is_obfuscated"] == "True"
    np.testing.assert_array_equal(reloaded.X, np.array([[5, 7], [3, 0]]))


def test_download_files_rejects_paths_outside_cache(tmp_path, fake_session_cls):
    manifest = pd.DataFrame(
        {"file_id": ["f1", "f2"], "file_name": ["a.tsv", "b.tsv"], "submitter_id": ["TCGA-01", "TCGA-02"]}
    )
    archive = tar_gz([("f1/a.tsv", b"one"), ("../../escaped.tsv", b"bad")])
    session = fake_session_cls(post_contents=[archive])

    with pytest.raises(tarfile.FilterError):
        download_files(manifest, tmp_path / "cache", session=session)
    assert not (tmp_path / "escaped.tsv").exists()
