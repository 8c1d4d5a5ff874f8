import structlog

from launchpad import logging_config
from launchpad.logging_config import bind_job_context, clear_job_context, set_correlation_id


def test_job_context_is_cleared_but_service_kept():
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service="deploy-worker")

    bind_job_context("job-1", "project-1", queue="deploy:queue", attempt=2)
    set_correlation_id("corr-1")
    assert structlog.contextvars.get_contextvars() == {
        "service": "deploy-worker",
        "job_id": "job-1",
        "project_id": "project-1",
        "queue": "deploy:queue",
        "attempt": 2,
        "correlation_id": "corr-1",
    }

    clear_job_context()

    assert structlog.contextvars.get_contextvars() == {"service": "deploy-worker"}
    structlog.contextvars.clear_contextvars()


def test_module_exposes_only_setup_and_job_context_helpers():
    public = {
        name
        for name, value in vars(logging_config).items()
        if not name.startswith("_") and callable(value)
    }

    assert {"get_logger", "get_correlation_id"}.isdisjoint(public)
    assert {"setup_logging", "set_correlation_id", "bind_job_context", "clear_job_context"} <= public
