"""Tests for configuration loading and migration plans."""

import pytest
import yaml
from pydantic import ValidationError


class TestXapiConfig:
    def test_url_normalized(self):
        from vmware2xcp.config import XapiConfig
        cfg = XapiConfig(url="xcp-master.lan/", password="secret")
        assert cfg.url == "https://xcp-master.lan"
        assert XapiConfig(url="http://10.0.0.1", password="x").url == "http://10.0.0.1"

    def test_password_from_env(self, monkeypatch):
        from vmware2xcp.config import XapiConfig
        monkeypatch.setenv("XAPI_PASSWORD", "from-env")
        cfg = XapiConfig(url="xcp")
        assert cfg.password.get_secret_value() == "from-env"

    def test_missing_password(self, monkeypatch):
        from vmware2xcp.config import XapiConfig
        monkeypatch.delenv("XAPI_PASSWORD", raising=False)
        with pytest.raises(ValidationError):
            XapiConfig(url="xcp")


class TestAppConfig:
    def test_from_yaml(self, tmp_path):
        from vmware2xcp.config import AppConfig
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({
            "esxi": {"host": "esxi-01.lan", "username": "root", "password": "p", "insecure": True},
            "xapi": {"url": "xcp-master.lan", "password": "q"},
            "transfer": {"thin": False, "work_dir": str(tmp_path)},
        }))
        config = AppConfig.from_yaml(path)
        assert config.esxi.host == "esxi-01.lan"
        assert config.esxi.port == 443
        assert config.xapi.username == "root"
        assert config.transfer.thin is False
        assert config.transfer.stop_source is False

    def test_from_env(self, monkeypatch):
        from vmware2xcp.config import AppConfig
        monkeypatch.setenv("XAPI_URL", "xcp-master.lan")
        monkeypatch.setenv("XAPI_PASSWORD", "q")
        monkeypatch.setenv("ESXI_HOST", "esxi-01.lan")
        monkeypatch.setenv("ESXI_PASSWORD", "p")
        monkeypatch.setenv("ESXI_INSECURE", "true")
        config = AppConfig.from_env_and_args()
        assert config.xapi.url == "https://xcp-master.lan"
        assert config.esxi.insecure is True
        assert config.esxi.password.get_secret_value() == "p"

    def test_esxi_optional(self, monkeypatch):
        from vmware2xcp.config import AppConfig
        monkeypatch.delenv("ESXI_HOST", raising=False)
        monkeypatch.setenv("XAPI_URL", "xcp")
        monkeypatch.setenv("XAPI_PASSWORD", "q")
        assert AppConfig.from_env_and_args().esxi is None


class TestVMMigrationPlan:
    def test_defaults_come_from_settings(self):
        from vmware2xcp.config import TransferSettings, VMMigrationPlan
        plan = VMMigrationPlan(vm_id="12", sr="sr-a", network="net-1")
        assert plan.mode == "cold"
        assert plan.resolve(TransferSettings(thin=True, stop_source=True)) == (True, True)

    def test_overrides(self):
        from vmware2xcp.config import TransferSettings, VMMigrationPlan
        plan = VMMigrationPlan(vm_id="12", sr="sr-a", network="net-1", mode="warm", thin=False, stop_source=True)
        assert plan.resolve(TransferSettings()) == (False, True)

    def test_unknown_mode(self):
        from vmware2xcp.config import VMMigrationPlan
        with pytest.raises(ValidationError):
            VMMigrationPlan(vm_id="12", sr="sr-a", network="net-1", mode="hot")
