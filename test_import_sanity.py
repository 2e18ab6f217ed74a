"""Import sanity tests.

These lightweight tests verify that the WSGI entrypoint and core modules
can be imported without errors: the minimum bar for a deploy.
"""

import pytest


def test_app_module_imports():
    """The Flask app module must import without errors."""
    import app  # noqa: F401


def test_wsgi_app_object():
    """The 'app:app' WSGI entrypoint must resolve to a Flask instance."""
    from app import app as flask_app
    assert flask_app is not None
    assert hasattr(flask_app, "route"), "app object is not a Flask instance"


def test_charger_search_imports():
    """Core symbols used by app.py must be importable."""
    from charger_search import SearchResult, search_chargers, refilter
    assert SearchResult is not None
    assert search_chargers is not None
    assert refilter is not None


def test_core_pipeline_imports():
    """The pure core must import without touching the network layer."""
    from correlation import correlate_chargers
    from filter_pipeline import FilterCriteria, apply_filters
    from charger_normalizer import normalize_charger
    assert correlate_chargers is not None
    assert FilterCriteria is not None
    assert apply_filters is not None
    assert normalize_charger is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
