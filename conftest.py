"""Root conftest.py for pytest.

Puts the project root on sys.path so `access`, `api`, `config` and `core`
import without an installed distribution.
"""
import os
import sys

project_root = os.path.dirname(os.path.abspath(__file__))
if project_root not in sys.path:
    sys.path.insert(0, project_root)


def pytest_configure(config):
    """Configure pytest path early in the process."""
    if project_root not in sys.path:
        sys.path.insert(0, project_root)
