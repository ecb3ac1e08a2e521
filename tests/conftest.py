"""
Pytest configuration and fixtures for femgax tests.

This configuration ensures environment validation tests run first
before any other tests to verify the development environment is
properly set up.
"""
import sys

import pytest


def pytest_collection_modifyitems(config, items):
    """Modify test collection to prioritize environment tests.

    Args:
        config: pytest configuration object
        items: List of collected test items
    """
    env_tests = []
    other_tests = []

    for item in items:
        if "test_environment.py" in str(item.fspath):
            env_tests.append(item)
        else:
            other_tests.append(item)

    env_test_priority = {
        "test_python_version": 1,
        "test_numpy_available": 2,
        "test_jax_available": 3,
        "test_jax_x64_enabled": 4,
        "test_femgax_importable": 99,
    }

    def get_env_test_priority(item):
        """Get priority for environment test ordering."""
        test_name = item.name.split("[")[0]
        return env_test_priority.get(test_name, 50)

    env_tests.sort(key=get_env_test_priority)

    items[:] = env_tests + other_tests


def pytest_runtest_setup(item):
    """Mark environment tests for potential special handling."""
    if "test_environment.py" in str(item.fspath):
        if not hasattr(item, "pytestmark"):
            item.pytestmark = []
        env_marker = pytest.mark.env_validation
        if env_marker not in item.pytestmark:
            item.pytestmark.append(env_marker)


@pytest.fixture(scope="session", autouse=True)
def validate_environment():
    """Session-scoped fixture to validate basic environment setup.

    Yields:
        dict: Environment validation results
    """
    import jax
    import numpy as onp

    validation_results = {
        "python_version": sys.version_info,
        "numpy_version": onp.__version__,
        "jax_devices": len(jax.devices()),
    }
    yield validation_results


@pytest.fixture
def temp_workspace(tmp_path):
    """Provide a temporary workspace for tests that need file I/O.

    Args:
        tmp_path: pytest temporary path fixture

    Returns:
        Path: Temporary directory path
    """
    workspace = tmp_path / "test_workspace"
    workspace.mkdir()
    return workspace


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "env_validation: mark test as environment validation"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )
