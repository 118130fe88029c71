import asyncio
import importlib.util
from pathlib import Path

import pytest

from warden.config import Settings
from warden.service.runtime import Runtime, _mask_url_password, get_runtime
from warden.storage.memory import MemoryStore
from warden.storage.memory_cache import MemoryCache

ACCESS = "runtime-access-secret-0123456789abcdefgh"
REFRESH = "runtime-refresh-secret-0123456789abcdefg"

ROOT = Path(__file__).resolve().parent.parent


def _settings(**overrides):
    base = dict(
        jwt_access_secret=ACCESS,
        jwt_refresh_secret=REFRESH,
        use_memory_store=True,
        redis_url="",
    )
    base.update(overrides)
    return Settings(**base)


def _load_bootstrap_script():
    spec = importlib.util.spec_from_file_location(
        "bootstrap_admin", ROOT / "scripts" / "bootstrap_admin.py"
    )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestRuntimeWiring:
    def test_memory_runtime_is_seeded(self):
        runtime = Runtime(_settings(test_mode=True))
        assert isinstance(runtime.store, MemoryStore)
        assert isinstance(runtime.cache, MemoryCache)
        assert runtime.store.get_role_by_code("admin") is not None

    def test_missing_redis_fails_outside_dev_modes(self):
        with pytest.raises(RuntimeError):
            Runtime(_settings(test_mode=False, allow_redis_fallback_dev=False))

    def test_dev_fallback_allows_memory_cache(self):
        runtime = Runtime(_settings(allow_redis_fallback_dev=True))
        assert isinstance(runtime.cache, MemoryCache)

    def test_runtime_is_a_singleton(self):
        assert get_runtime() is get_runtime()

    def test_register_owned_resource_uses_store_finder(self):
        runtime = Runtime(_settings(test_mode=True))
        runtime.register_owned_resource("notes", owner_field="author_id")
        runtime.store.put_resource("notes", {"id": "n-1", "author_id": "p-1"})
        finder = runtime.ownership.get("notes", "author_id")
        assert finder("n-1", "p-1") is True
        assert runtime.ownership.get("notes") is None


@pytest.mark.parametrize(
    "url,expected",
    [
        ("redis://:hunter2@cache:6379/0", "redis://:***@cache:6379/0"),
        ("postgresql://app:pw@db/warden", "postgresql://app:***@db/warden"),
        ("redis://cache:6379/0", "redis://cache:6379/0"),
        ("", ""),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected


class TestBootstrapAdmin:
    def test_creates_then_reports_existing_admin(self):
        script = _load_bootstrap_script()
        created = asyncio.run(
            script.bootstrap_admin("root@example.com", "root", "Sup3r-Secret-Pass")
        )
        assert created["status"] == "created"
        runtime = get_runtime()
        assert runtime.rbac.has_role(created["principal_id"], "admin")

        again = asyncio.run(
            script.bootstrap_admin("root@example.com", "root", "Sup3r-Secret-Pass")
        )
        assert again["status"] == "already_admin"

    def test_promotes_existing_principal(self):
        script = _load_bootstrap_script()
        runtime = get_runtime()
        principal = runtime.store.create_principal(
            "ada@example.com", "ada", runtime.hasher.hash("CorrectHorse9!")
        )
        dry = asyncio.run(script.bootstrap_admin("ada@example.com", "ada", "x", dry_run=True))
        assert dry["status"] == "dry_run"
        result = asyncio.run(script.bootstrap_admin("ada@example.com", "ada", "x"))
        assert result == {
            "principal_id": principal.id,
            "email": "ada@example.com",
            "status": "promoted",
        }

    @pytest.mark.parametrize(
        "password,ok",
        [("Sup3r-Secret-Pass", True), ("short1A!", False), ("alllowercaseletters", False)],
    )
    def test_password_policy(self, password, ok):
        assert _load_bootstrap_script().validate_password(password) is ok
