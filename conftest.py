import sys
import os
import pytest
from pathlib import Path

# Add the src directory to Python path for imports
root_dir = Path(__file__).parent
src_dir = root_dir / "src"
sys.path.insert(0, str(src_dir))
sys.path.insert(0, str(root_dir))


def pytest_configure(config):
    """
    Validate Python version and configure pytest
    """
    if sys.version_info[0] < 3:
        raise SystemError("Python 3 is required to run these tests")

    # Add markers
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Keep boto3 away from real credentials and a real region."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


# Configure test paths
pytest_plugins = []
