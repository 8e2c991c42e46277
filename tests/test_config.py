"""Tests for environment configuration and credential lookup."""

import pytest

from conftest import FakeRunner
from egressfw.config import DEFAULT_ALLOWED_DOMAINS, FirewallConfig, env_bool, env_list
from egressfw.credentials import resolve_token
from egressfw.errors import CredentialError

ENV_VARS = ["DRY_RUN", "EGRESSFW_IPSET", "EGRESSFW_REQUIRED_CATEGORIES", "EGRESSFW_EXTRA_DOMAINS",
            "EGRESSFW_FETCH_TIMEOUT", "GH_TOKEN", "GITHUB_TOKEN"]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestEnvHelpers:
    @pytest.mark.parametrize("raw", ["1", "true", "Yes", " on "])
    def test_env_bool_true(self, monkeypatch, raw):
        monkeypatch.setenv("DRY_RUN", raw)
        assert env_bool("DRY_RUN", False) is True

    def test_env_bool_default(self):
        assert env_bool("DRY_RUN", True) is True

    def test_env_list(self, monkeypatch):
        monkeypatch.setenv("EGRESSFW_EXTRA_DOMAINS", "crates.io, ,docs.rs")
        assert env_list("EGRESSFW_EXTRA_DOMAINS") == ("crates.io", "docs.rs")


class TestFirewallConfig:
    def test_defaults(self):
        config = FirewallConfig.from_env()
        assert config.ipset_name == "allowed-domains"
        assert config.required_categories == ("web", "api", "git")
        assert config.allowed_domains == DEFAULT_ALLOWED_DOMAINS
        assert config.dry_run is False

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("DRY_RUN", "true")
        monkeypatch.setenv("EGRESSFW_REQUIRED_CATEGORIES", "api,git")
        monkeypatch.setenv("EGRESSFW_EXTRA_DOMAINS", "crates.io,registry.npmjs.org")
        monkeypatch.setenv("EGRESSFW_FETCH_TIMEOUT", "2.5")
        config = FirewallConfig.from_env()
        assert config.dry_run is True
        assert config.required_categories == ("api", "git")
        assert config.allowed_domains == DEFAULT_ALLOWED_DOMAINS + ("crates.io",)
        assert config.fetch_timeout == 2.5

    def test_bad_number(self, monkeypatch):
        monkeypatch.setenv("EGRESSFW_FETCH_TIMEOUT", "ten")
        with pytest.raises(ValueError, match="EGRESSFW_FETCH_TIMEOUT"):
            FirewallConfig.from_env()

    @pytest.mark.parametrize("raw", ["", " , "])
    def test_empty_required_categories(self, monkeypatch, raw):
        monkeypatch.setenv("EGRESSFW_REQUIRED_CATEGORIES", raw)
        with pytest.raises(ValueError, match="must name at least one category"):
            FirewallConfig.from_env()


class TestResolveToken:
    def test_env_token(self, monkeypatch):
        monkeypatch.setenv("GH_TOKEN", " ghp_abc ")
        runner = FakeRunner()
        assert resolve_token(runner) == "ghp_abc"
        assert runner.calls == []

    def test_gh_cli_token(self, monkeypatch):
        monkeypatch.setattr("egressfw.credentials.shutil.which", lambda tool: "/usr/bin/gh")
        runner = FakeRunner({("gh", "auth", "token"): (0, "gho_xyz\n", "")})
        assert resolve_token(runner) == "gho_xyz"

    def test_gh_not_authenticated(self, monkeypatch):
        monkeypatch.setattr("egressfw.credentials.shutil.which", lambda tool: "/usr/bin/gh")
        runner = FakeRunner({("gh", "auth", "token"): (1, "", "no oauth token found")})
        with pytest.raises(CredentialError, match="gh auth login"):
            resolve_token(runner)

    def test_no_gh(self, monkeypatch):
        monkeypatch.setattr("egressfw.credentials.shutil.which", lambda tool: None)
        with pytest.raises(CredentialError, match="GH_TOKEN"):
            resolve_token(FakeRunner())
