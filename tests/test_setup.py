"""Test that the project setup is working correctly."""

import krc20_mirror


def test_version() -> None:
    """Test that version is defined."""
    assert krc20_mirror.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from krc20_mirror import ingestor
    from krc20_mirror import storage
    from krc20_mirror import sync
    from krc20_mirror import service

    # Just verify imports work
    assert ingestor is not None
    assert storage is not None
    assert sync is not None
    assert service is not None
