"""Package metadata consistency checks."""

from importlib.metadata import version

from packaging.version import Version

import semble_core


def test_version_matches_distribution_metadata() -> None:
    """``semble_core.__version__`` agrees with the installed distribution."""
    assert Version(semble_core.__version__) == Version(version("semble-core"))
