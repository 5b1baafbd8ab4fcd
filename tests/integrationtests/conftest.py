"""
Pytest fixtures for integration tests.
"""
import pytest

from audit import AuditTrail
from config import ServiceConfig
from order_service import build_order_service


@pytest.fixture
def audit():
    return AuditTrail()


@pytest.fixture(params=["memory", "sqlite"])
def service(request, tmp_path, audit):
    """An order service over each store implementation, with an audit trail attached."""
    if request.param == "memory":
        config = ServiceConfig()
    else:
        config = ServiceConfig(database_path=str(tmp_path / "orders.db"), store_timeout=10.0,
                               lock_timeout=10.0)
    service = build_order_service(config, listeners=[audit])
    yield service
    service.close()
