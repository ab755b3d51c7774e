"""Root conftest.py for test configuration.

Ensures local src/ directory takes priority over any installed packages.
"""

import sys
from pathlib import Path

import pytest

# Insert local src directory at the beginning of sys.path
# This ensures that the local tabrecall package is used, not any installed one
_src_dir = Path(__file__).parent.parent / "src"
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

# Force reimport of tabrecall modules if already imported
for module_name in list(sys.modules.keys()):
    if module_name.startswith("tabrecall"):
        del sys.modules[module_name]

from fakes import FakeModel, make_engine  # noqa: E402

from tabrecall.index._internal.embedding import LocalEngine  # noqa: E402


@pytest.fixture
def fake_model() -> FakeModel:
    return FakeModel()


@pytest.fixture
def engine(fake_model: FakeModel) -> LocalEngine:
    """Uninitialized LocalEngine backed by FakeModel."""
    return make_engine(fake_model)
