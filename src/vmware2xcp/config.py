"""Configuration models for vmware2xcp using Pydantic v2."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


class EsxiConfig(BaseModel):
    """Source ESXi host connection configuration."""

    host: str = Field(..., description="ESXi hostname or IP")
    username: str = Field(..., description="ESXi username")
    password: Optional[SecretStr] = Field(None, description="ESXi password (prefer password_env)")
    password_env: Optional[str] = Field(None, description="Environment variable containing the password")
    insecure: bool = Field(False, description="Skip SSL certificate verification")
    port: int = Field(443, description="vSphere API port")

    @model_validator(mode="after")
    def resolve_password(self) -> "EsxiConfig":
        if self.password is None and self.password_env:
            env_val = os.environ.get(self.password_env)
            if env_val:
                self.password = SecretStr(env_val)
        if self.password is None:
            raise ValueError("Either 'password' or 'password_env' (with matching env var) must be provided")
        return self


class XapiConfig(BaseModel):
    """Destination pool master (XCP-ng / XenServer) configuration."""

    url: str = Field(..., description="Pool master URL, e.g. https://xcp-master.lan")
    username: str = Field("root", description="XAPI username")
    password: Optional[SecretStr] = Field(None)
    password_env: Optional[str] = Field("XAPI_PASSWORD")
    insecure: bool = Field(False, description="Skip SSL certificate verification")

    @field_validator("url")
    @classmethod
    def normalize_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")

    @model_validator(mode="after")
    def resolve_password(self) -> "XapiConfig":
        if self.password is None and self.password_env:
            env_val = os.environ.get(self.password_env)
            if env_val:
                self.password = SecretStr(env_val)
        if self.password is None:
            raise ValueError("XAPI password not found (check XAPI_PASSWORD env var)")
        return self


class TransferSettings(BaseModel):
    """Disk transfer behavior."""

    thin: bool = Field(True, description="Skip unallocated blocks and transfer VHD instead of raw")
    stop_source: bool = Field(False, description="Allow powering off a running source VM")
    work_dir: Path = Field(Path("/var/lib/vmware2xcp"), description="Directory for state files and logs")


class AppConfig(BaseModel):
    """Root application configuration."""

    esxi: Optional[EsxiConfig] = None
    xapi: XapiConfig
    transfer: TransferSettings = TransferSettings()

    @classmethod
    def from_yaml(cls, path: str | Path) -> "AppConfig":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls(**data)

    @classmethod
    def from_env_and_args(cls, **overrides) -> "AppConfig":
        """Build config from environment variables with CLI overrides."""
        base: dict = {
            "xapi": {
                "url": os.environ.get("XAPI_URL", ""),
                "username": os.environ.get("XAPI_USERNAME", "root"),
                "password_env": "XAPI_PASSWORD",
                "insecure": os.environ.get("XAPI_INSECURE", "false").lower() == "true",
            },
        }
        if os.environ.get("ESXI_HOST"):
            base["esxi"] = {
                "host": os.environ["ESXI_HOST"],
                "username": os.environ.get("ESXI_USERNAME", "root"),
                "password_env": "ESXI_PASSWORD",
                "insecure": os.environ.get("ESXI_INSECURE", "false").lower() == "true",
            }
        # Deep merge overrides
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                base[key].update(value)
            else:
                base[key] = value
        return cls(**base)


# --- VM-specific migration plan ---

class VMMigrationPlan(BaseModel):
    """Migration plan for a single ESXi VM."""

    vm_id: str = Field(..., description="Source VM managed object id (e.g. '12')")
    sr: str = Field(..., description="Destination SR uuid")
    network: str = Field(..., description="Destination network uuid for every VIF")
    mode: str = Field("cold", pattern="^(cold|warm)$", description="Transfer mode")
    thin: Optional[bool] = Field(None, description="Override transfer.thin")
    stop_source: Optional[bool] = Field(None, description="Override transfer.stop_source")

    def resolve(self, settings: TransferSettings) -> tuple[bool, bool]:
        """Return (thin, stop_source) with plan overrides applied."""
        thin = settings.thin if self.thin is None else self.thin
        stop_source = settings.stop_source if self.stop_source is None else self.stop_source
        return thin, stop_source
