"""Tests for credentials module."""

import stat

import pytest

from homelab_installer.credentials import MASTER_SERVICES, CredentialCollector, check_password, env_var_for
from homelab_installer.exceptions import ConfigError, ValidationError

from conftest import ScriptedPrompter

ALL_SET = {
    "ARGOCD_PASSWORD": "argocd-secret",
    "PI_HOLE_PASSWORD": "pihole-secret",
    "TRAEFIK_PASSWORD": "traefik-secret",
}


class TestHelpers:
    def test_env_var_names(self):
        assert env_var_for("ArgoCD") == "ARGOCD_PASSWORD"
        assert env_var_for("Pi-hole") == "PI_HOLE_PASSWORD"
        assert env_var_for("Traefik") == "TRAEFIK_PASSWORD"

    def test_check_password(self):
        assert check_password("longenough", "longenough") == "longenough"
        with pytest.raises(ValidationError, match="do not match"):
            check_password("longenough", "different1")
        with pytest.raises(ValidationError, match="at least 8"):
            check_password("short", "short")


class TestCollect:
    """Test credential collection and persistence."""

    def test_all_present_returns_without_prompting(self, paths):
        environ = dict(ALL_SET)
        prompter = ScriptedPrompter()
        collector = CredentialCollector(paths.credentials_file, prompter, environ)

        result = collector.collect()

        assert result == {"ArgoCD": "argocd-secret", "Pi-hole": "pihole-secret", "Traefik": "traefik-secret"}
        assert prompter.asked == []
        assert not paths.credentials_file.exists()

    def test_preseeded_value_is_not_prompted(self, paths):
        environ = {"ARGOCD_PASSWORD": "argocd-secret"}
        prompter = ScriptedPrompter(secrets=["pihole-pass", "pihole-pass", "traefik-pass", "traefik-pass"])
        collector = CredentialCollector(paths.credentials_file, prompter, environ)

        result = collector.collect()

        assert result["ArgoCD"] == "argocd-secret"
        assert result["Pi-hole"] == "pihole-pass"
        assert not any("ArgoCD" in q for q in prompter.asked)
        assert environ["TRAEFIK_PASSWORD"] == "traefik-pass"

    def test_file_contents_and_mode(self, paths):
        environ = {"ARGOCD_PASSWORD": "argocd-secret", "PI_HOLE_PASSWORD": "pihole-secret"}
        prompter = ScriptedPrompter(secrets=["traefik-pass", "traefik-pass"])
        CredentialCollector(paths.credentials_file, prompter, environ, service_user="ops").collect()

        content = paths.credentials_file.read_text()
        assert content.startswith("# Homelab Service Credentials")
        assert "# Username for all services: ops" in content
        assert "ARGOCD_PASSWORD=argocd-secret" in content
        assert "TRAEFIK_PASSWORD=traefik-pass" in content
        assert stat.S_IMODE(paths.credentials_file.stat().st_mode) == 0o600

    def test_reprompts_on_short_and_mismatch(self, paths):
        environ = {"ARGOCD_PASSWORD": "a" * 8, "PI_HOLE_PASSWORD": "b" * 8}
        prompter = ScriptedPrompter(secrets=["short", "short", "longenough", "different", "longenough", "longenough"])
        result = CredentialCollector(paths.credentials_file, prompter, environ).collect()
        assert result["Traefik"] == "longenough"
        assert prompter.secrets == []

    def test_auto_confirm_missing_raises(self, paths):
        collector = CredentialCollector(paths.credentials_file, ScriptedPrompter(), {}, auto_confirm=True)
        with pytest.raises(ConfigError, match="ARGOCD_PASSWORD"):
            collector.collect()

    def test_reuses_values_from_interrupted_run(self, paths):
        paths.credentials_file.parent.mkdir(parents=True, exist_ok=True)
        paths.credentials_file.write_text("# Homelab Service Credentials\nARGOCD_PASSWORD=from-file-1\n")
        prompter = ScriptedPrompter(secrets=["pihole-pass", "pihole-pass", "traefik-pass", "traefik-pass"])
        environ = {}

        result = CredentialCollector(paths.credentials_file, prompter, environ).collect(MASTER_SERVICES)

        assert result["ArgoCD"] == "from-file-1"
        assert environ["ARGOCD_PASSWORD"] == "from-file-1"
        assert "ARGOCD_PASSWORD=from-file-1" in paths.credentials_file.read_text()
