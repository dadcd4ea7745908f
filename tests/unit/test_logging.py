import pytest

from roomview.core.logging import LogContext, job_id_var, redact_secrets, stage_var, with_logging


def test_redact_signed_url_credentials():
    event = redact_secrets(None, "info", {
        "event": "room_image_signed",
        "url": "http://test/api/v1/storage/objects/tenants/t/a.png?expires=1700000000&sig=deadbeef",
        "sas": "https://acct.blob.core.windows.net/c/k.png?sv=2023-11-03&se=2026&sp=r&sig=abc%2Fdef",
        "api_key": "secret-key",
        "key": "tenants/t/a.png",
    })

    assert event["url"].endswith("expires=1700000000&sig=***")
    assert "abc%2Fdef" not in event["sas"]
    assert event["api_key"] == "***"
    assert event["key"] == "tenants/t/a.png"


def test_log_context_restores_previous_values():
    with LogContext(job_id="outer"):
        with LogContext(job_id="inner", stage="composite"):
            assert job_id_var.get() == "inner"
            assert stage_var.get() == "composite"
        assert job_id_var.get() == "outer"
        assert stage_var.get() is None
    assert job_id_var.get() is None


def test_with_logging_binds_stage_for_sync_functions():
    @with_logging("normalize")
    def stage():
        return stage_var.get()

    assert stage() == "normalize"
    assert stage_var.get() is None


@pytest.mark.asyncio
async def test_with_logging_reraises_and_resets_stage():
    @with_logging("download")
    async def stage():
        raise RuntimeError("origin down")

    with pytest.raises(RuntimeError):
        await stage()
    assert stage_var.get() is None
