import os

os.environ.setdefault("APP_ENV", "testing")

import pytest

from reconciliation import reset_reconciliation_queue
from repositories import reset_repositories


@pytest.fixture(autouse=True)
def reset_state():
    """Reset repositories and the reconciliation queue before each test."""
    reset_repositories()
    reset_reconciliation_queue()
