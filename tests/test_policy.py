"""Policy checks run in order and stop at the first failure."""

from __future__ import annotations

import os

import pytest

from wpcron.errors import SecurityViolation
from wpcron.executor.policy import PolicyValidator, gate_records
from wpcron.registry.records import JobStatus, Method, SiteRecord

SHELLS = {"alice": "/bin/bash", "bob": "/bin/bash", "carol": "/usr/sbin/nologin", "dave": "/opt/shells/xonsh"}


@pytest.fixture
def owners():
    # path -> owning account; anything unlisted belongs to alice.
    return {}


@pytest.fixture
def validator(runner_config, owners):
    return PolicyValidator(
        runner_config.security,
        shell_lookup=SHELLS.get,
        owner_of=lambda p: owners.get(p, "alice"),
    )


def _check(validator, record):
    with pytest.raises(SecurityViolation) as exc:
        validator.validate(record)
    return exc.value.check


class TestPaths:
    def test_valid_site_passes(self, validator, make_site):
        site = make_site("a")
        record = SiteRecord(path=str(site), owner="alice", method=Method.WP_CLI)
        assert validator.validate(record) is record

    def test_traversal_is_blocked(self, validator, sites_root, make_site):
        make_site("a")
        record = SiteRecord(path=f"{sites_root}/b/../a", owner="alice", method=Method.WP_CLI)
        assert _check(validator, record) == "path_traversal"

    def test_outside_roots_is_blocked(self, validator):
        assert _check(validator, SiteRecord("/srv/site", "alice", Method.WP_CLI)) == "path_not_allowed"

    def test_sibling_prefix_is_not_a_root(self, validator, sites_root, tmp_path):
        sibling = tmp_path / (sites_root.name + "2")
        sibling.mkdir()
        assert _check(validator, SiteRecord(str(sibling), "alice", Method.WP_CLI)) == "path_not_allowed"

    def test_symlink_escape_is_blocked(self, validator, sites_root, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "wp-config.php").write_text("<?php\n")
        link = sites_root / "escape"
        os.symlink(outside, link)
        assert _check(validator, SiteRecord(str(link), "alice", Method.WP_CLI)) == "resolved_path_not_allowed"

    def test_nonexistent_path_is_blocked(self, validator, sites_root):
        assert _check(validator, SiteRecord(str(sites_root / "gone"), "alice", Method.WP_CLI)) == "path_unresolvable"


class TestUsers:
    @pytest.mark.parametrize("user", ["root", "nobody", "daemon", "_apt", "systemd-network"])
    def test_system_accounts_are_denied(self, validator, make_site, user):
        site = make_site("a")
        assert _check(validator, SiteRecord(str(site), user, Method.WP_CLI)) == "system_user"

    def test_unknown_account(self, validator, make_site):
        site = make_site("a")
        assert _check(validator, SiteRecord(str(site), "mallory", Method.WP_CLI)) == "unknown_user"

    def test_disabled_shell(self, validator, make_site):
        site = make_site("a")
        assert _check(validator, SiteRecord(str(site), "carol", Method.WP_CLI)) == "disabled_shell"

    def test_unusual_shell_is_allowed_with_warning(self, validator, make_site, owners, caplog):
        site = make_site("a")
        owners[str(site)] = "dave"
        validator.validate(SiteRecord(str(site), "dave", Method.WP_CLI))
        assert any(getattr(r, "event", None) == "unusual_shell" for r in caplog.records)


class TestSiteFiles:
    def test_missing_wp_config(self, validator, make_site):
        site = make_site("a", config=False)
        assert _check(validator, SiteRecord(str(site), "alice", Method.WP_CLI)) == "missing_config"

    def test_owner_mismatch(self, validator, make_site, owners):
        site = make_site("a")
        owners[str(site)] = "bob"
        assert _check(validator, SiteRecord(str(site), "alice", Method.WP_CLI)) == "owner_mismatch"

    def test_php_direct_requires_entry_script(self, validator, make_site):
        site = make_site("a", direct_entry=False)
        assert _check(validator, SiteRecord(str(site), "alice", Method.PHP_DIRECT)) == "missing_direct_entry"

    def test_wp_cli_does_not_require_entry_script(self, validator, make_site):
        site = make_site("a", direct_entry=False)
        validator.validate(SiteRecord(str(site), "alice", Method.WP_CLI))


def test_gate_records_keeps_order_and_converts_violations(validator, make_site, owners):
    a, b, c = make_site("a"), make_site("b"), make_site("c")
    owners[str(b)] = "bob"
    records = [SiteRecord(str(p), "alice", Method.WP_CLI, line_no=i) for i, p in enumerate((a, b, c), start=1)]

    gate = gate_records(records, validator)

    assert [r.path for r in gate.admitted] == [str(a), str(c)]
    assert [(o.status, o.path, o.line_no) for o in gate.blocked] == [(JobStatus.SECURITY_BLOCKED, str(b), 2)]
    assert "owner mismatch" in gate.blocked[0].detail
