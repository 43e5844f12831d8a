import anndata
import numpy as np
import pandas as pd
import pytest

N_GROUPS = 4
PATIENTS_PER_GROUP = 10
GENES_PER_BLOCK = 10
N_BACKGROUND = 20


def make_block_counts(seed=0):
    """Patients x genes counts where each group over-expresses its own gene block"""
    rng = np.random.default_rng(seed)
    n_patients = N_GROUPS * PATIENTS_PER_GROUP
    n_genes = N_GROUPS * GENES_PER_BLOCK + N_BACKGROUND

    lam = np.full((n_patients, n_genes), 20.0)
    for g in range(N_GROUPS):
        rows = slice(g * PATIENTS_PER_GROUP, (g + 1) * PATIENTS_PER_GROUP)
        cols = slice(g * GENES_PER_BLOCK, (g + 1) * GENES_PER_BLOCK)
        lam[rows, cols] = 400.0
    lam[:, N_GROUPS * GENES_PER_BLOCK :] = 100.0

    return rng.poisson(lam).astype(np.int64)


@pytest.fixture
def block_adata():
    counts = make_block_counts()
    n_patients, n_genes = counts.shape

    obs = pd.DataFrame(
        {
            "group": [f"g{i // PATIENTS_PER_GROUP}" for i in range(n_patients)],
            "demographic.gender": ["female"] * n_patients,
        },
        index=pd.Index([f"TCGA-XX-{i:04d}" for i in range(n_patients)], name="patient"),
    )
    var = pd.DataFrame(
        {
            "gene_name": [f"NAME{i}" for i in range(n_genes)],
            "entrez_id": np.arange(1000, 1000 + n_genes, dtype=np.int64),
            "symbol": [f"SYM{i}" for i in range(n_genes)],
        },
        index=pd.Index([f"ENSG{i:011d}" for i in range(n_genes)], name="gene_id"),
    )

    adata = anndata.AnnData(X=counts, obs=obs, var=var)
    adata.layers["counts"] = adata.X.copy()
    return adata


class FakeResponse:
    def __init__(self, payload=None, content=b""):
        self._payload = payload
        self.content = content

    def json(self):
        return self._payload

    def raise_for_status(self):
        return None


class FakeSession:
    """Serves canned GDC responses and records requests"""

    def __init__(self, get_pages=None, post_contents=None):
        self.get_pages = list(get_pages or [])
        self.post_contents = list(post_contents or [])
        self.get_calls = []
        self.post_calls = []

    def get(self, url, params=None, timeout=None):
        self.get_calls.append((url, params))
        return FakeResponse(payload=self.get_pages.pop(0))

    def post(self, url, data=None, headers=None, timeout=None):
        self.post_calls.append((url, data))
        return FakeResponse(content=self.post_contents.pop(0))


class FakeGeneClient:
    """mygene-compatible client returning canned hits"""

    def __init__(self, hits):
        self.hits = hits
        self.queries = None

    def querymany(self, ids, **kwargs):
        self.queries = (list(ids), kwargs)
        return self.hits


@pytest.fixture
def fake_session_cls():
    return FakeSession


@pytest.fixture
def fake_gene_client_cls():
    return FakeGeneClient
