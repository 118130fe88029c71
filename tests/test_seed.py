from warden.service.seed import DEFAULT_GRANTS, default_permission_codes, seed_defaults
from warden.storage.memory import MemoryStore


def test_seed_creates_system_roles_and_permissions():
    store = MemoryStore()
    report = seed_defaults(store)
    assert sorted(report.roles_created) == ["admin", "guest", "user"]
    assert len(report.permissions_created) == len(default_permission_codes()) == 13
    assert all(store.get_role_by_code(code).is_system for code in report.roles_created)
    assert store.get_permission_by_code("*:*").module == "*"


def test_seed_grants():
    store = MemoryStore()
    seed_defaults(store)
    admin_codes = {p.code for p in store.list_role_permissions(store.get_role_by_code("admin").id)}
    assert admin_codes == set(default_permission_codes())
    for role_code in ("user", "guest"):
        granted = {
            p.code for p in store.list_role_permissions(store.get_role_by_code(role_code).id)
        }
        assert granted == set(DEFAULT_GRANTS[role_code])


def test_seed_is_idempotent():
    store = MemoryStore()
    seed_defaults(store)
    roles_before = len(store.list_roles())
    permissions_before = len(store.list_permissions())
    second = seed_defaults(store)
    assert second.roles_created == []
    assert second.permissions_created == []
    assert len(store.list_roles()) == roles_before
    assert len(store.list_permissions()) == permissions_before
