import os

import pytest

# Set AWS environment variables for testing before any handler module is imported
os.environ.update(
    {
        "AWS_DEFAULT_REGION": "us-east-1",
        "AWS_REGION": "us-east-1",
        "AWS_ACCESS_KEY_ID": "testing",
        "AWS_SECRET_ACCESS_KEY": "testing",
        "AWS_SECURITY_TOKEN": "testing",
        "AWS_SESSION_TOKEN": "testing",
        "SUBSCRIPTION_TABLE_NAME": "test-subscriptions-table",
        "POWERTOOLS_SERVICE_NAME": "lunanul-tests",
    }
)

from lunanul.services.tier_catalog import default_catalog  # noqa: E402


@pytest.fixture
def catalog():
    return default_catalog()
