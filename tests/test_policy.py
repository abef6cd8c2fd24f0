import pytest

from freshline.access.policy import (
    DEFAULT_POLICY,
    Policy,
    PolicyError,
    PolicyEvaluator,
    Principal,
    normalize_action,
)


@pytest.fixture
def evaluator():
    return PolicyEvaluator(DEFAULT_POLICY)


def test_agent_write_on_clients_is_normalized_to_create(evaluator):
    assert evaluator.can_access("agent", "clients", "write") is True
    assert evaluator.can_access("agent", "clients", "create") is True


def test_client_has_no_clients_entry(evaluator):
    for action in ("create", "read", "update", "delete", "manage", "write", "view"):
        assert evaluator.can_access("client", "clients", action) is False


def test_admin_wildcard_allows_everything(evaluator):
    assert evaluator.can_access("admin", "clients", "delete") is True
    assert evaluator.can_access("admin", "anything-at-all", "manage") is True


def test_unknown_role_resource_and_action_are_denied(evaluator):
    assert evaluator.can_access("guest", "clients", "read") is False
    assert evaluator.can_access("agent", "billing", "read") is False
    assert evaluator.can_access("agent", "clients", "launch") is False


def test_wildcard_role_allows_actions_outside_known_set(evaluator):
    assert evaluator.can_access("admin", "clients", "export") is True
    assert evaluator.can_access("admin", "reports", "launch") is True
    assert evaluator.can_access_all("admin", [("calls", "export"), ("clients", "read")]) is True


def test_no_implicit_inheritance(evaluator):
    assert evaluator.can_access("agent", "clients", "delete") is False
    assert evaluator.can_access("client", "analytics", "read") is False


def test_view_synonym_matches_read(evaluator):
    assert normalize_action("VIEW") == "read"
    assert evaluator.can_access("client", "interventions", "view") is True


def test_malformed_input_denies(evaluator):
    assert evaluator.can_access(["agent"], "clients", "read") is False
    assert evaluator.can_access("agent", "clients", None) is False


def test_action_wildcard_within_resource():
    evaluator = PolicyEvaluator(Policy.from_mapping({"ops": {"calls": ["*"]}}))
    assert evaluator.can_access("ops", "calls", "delete") is True
    assert evaluator.can_access("ops", "clients", "read") is False


@pytest.mark.parametrize(
    "table",
    [
        {"*": {"calls": ["read"]}},
        {"": {"calls": ["read"]}},
        {"agent": {"calls": "read"}},
        {"agent": {"calls": ["fly"]}},
        {"agent": {"": ["read"]}},
        {"agent": ["calls"]},
    ],
)
def test_invalid_tables_rejected(table):
    with pytest.raises(PolicyError):
        Policy.from_mapping(table)


def test_can_access_all(evaluator):
    assert evaluator.can_access_all("agent", [("calls", "read"), ("clients", "write")]) is True
    assert evaluator.can_access_all("agent", [("calls", "read"), ("clients", "delete")]) is False
    assert evaluator.can_access_all("agent", []) is False


def test_permissions_for(evaluator):
    perms = evaluator.permissions_for("client")
    assert perms == {
        "profile": ["read", "update"],
        "interventions": ["read"],
        "support": ["create"],
    }
    assert evaluator.permissions_for("nobody") == {}


def test_principal_scope():
    assert Principal("agent").scope == "agent"
    assert Principal("agent", "42").scope == "agent:42"
