import structlog

from planforge.infrastructure.observability import configure_structlog


def test_storage_environment_is_bound_to_every_event():
    try:
        configure_structlog("debug", json_output=False, storage_environment="staging")
        assert structlog.contextvars.get_contextvars() == {"storage_environment": "staging"}

        configure_structlog()
        assert structlog.contextvars.get_contextvars() == {}
    finally:
        structlog.contextvars.clear_contextvars()
