import pytest
from pydantic import ValidationError

from link_sentinel_core.config import Settings


def test_settings_defaults() -> None:
    settings = Settings.model_validate({"SITE_URL": "https://example.com"})
    assert settings.auto_resolve_permanent is False
    assert settings.follow_external_redirects is False
    assert settings.scan_batch_size_bounded == 25
    assert settings.scan_progress_interval_bounded == 10
    assert settings.scan_lease_ttl_s == 900
    assert settings.resolve_all_lease_ttl_s == 180
    assert settings.resolve_cache_ttl_s == 86400
    assert settings.eligible_type_list == ["post", "page"]
    assert settings.admin_prefix_list == ["/wp-admin", "/wp-login"]
    assert settings.internal_host_list == []


def test_settings_requires_site_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SITE_URL", raising=False)
    with pytest.raises(ValidationError):
        Settings.model_validate({})


def test_settings_clamps_tunables() -> None:
    settings = Settings.model_validate(
        {
            "SITE_URL": "https://example.com",
            "INTERNAL_HOSTS": "cdn.example.net, static.example.net ,",
            "ELIGIBLE_TYPES": "",
            "SCAN_BATCH_SIZE": "1000",
            "SCAN_PROGRESS_INTERVAL": "500",
            "SCAN_STEP_BUDGET_S": "0.5",
            "EXTERNAL_MAX_HOPS": "9",
            "RESOLVE_ALL_BATCH_SIZE": "0",
            "RESOLVE_ALL_DELAY_MS": "-5",
            "RESOLVE_ALL_STEP_BUDGET_S": "1",
        }
    )
    assert settings.internal_host_list == ["cdn.example.net", "static.example.net"]
    assert settings.eligible_type_list == ["post", "page"]
    assert settings.scan_batch_size_bounded == 100
    assert settings.scan_progress_interval_bounded == 100
    assert settings.scan_step_budget_bounded == 3.0
    assert settings.external_max_hops_bounded == 3
    assert settings.resolve_all_batch_bounded == 1
    assert settings.resolve_all_delay_bounded == 0
    assert settings.resolve_all_step_budget_bounded == 5.0


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SITE_URL", "https://env.example.com")
    monkeypatch.setenv("AUTO_RESOLVE_PERMANENT", "1")
    settings = Settings()
    assert settings.site_url == "https://env.example.com"
    assert settings.auto_resolve_permanent is True
