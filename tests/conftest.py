import pytest
import structlog


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo any setup_logging() done by a test (the CLI configures logging)."""
    yield
    structlog.reset_defaults()
