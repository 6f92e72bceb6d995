"""Handler registry and loading handler modules by name."""

import sys

import pytest

from services.execution import (
    JobRegistry,
    UnknownJobClassError,
    job_registry,
    load_job_modules,
)


@pytest.fixture
def clean_global_registry():
    sys.modules.pop("sample_jobs", None)
    job_registry.clear()
    yield job_registry
    job_registry.clear()
    sys.modules.pop("sample_jobs", None)


def test_unknown_class_lists_available():
    registry = JobRegistry()
    registry.add("Echo", lambda ctx: ctx.params)

    with pytest.raises(UnknownJobClassError) as exc_info:
        registry.get("Missing")
    assert "Echo" in str(exc_info.value)


def test_load_job_modules_registers_handlers(clean_global_registry):
    assert not clean_global_registry.has("Greet")

    assert load_job_modules(["sample_jobs"]) == ["sample_jobs"]
    assert clean_global_registry.list() == ["Greet"]


def test_load_job_modules_fails_loudly_on_bad_module(clean_global_registry):
    with pytest.raises(ImportError):
        load_job_modules(["no_such_handlers_module"])
