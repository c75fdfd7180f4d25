# conftest.py
import os

import pytest


@pytest.fixture(autouse=True, scope="session")
def kernel_cache_dir(tmp_path_factory):
    """Write generated kernel modules into a throw-away directory."""
    path = tmp_path_factory.mktemp("weakfem_jit")
    old = os.environ.get("WEAKFEM_CACHE_DIR")
    os.environ["WEAKFEM_CACHE_DIR"] = str(path)
    yield path
    if old is None:
        os.environ.pop("WEAKFEM_CACHE_DIR", None)
    else:
        os.environ["WEAKFEM_CACHE_DIR"] = old
