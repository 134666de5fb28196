"""Configuration for ci-leak-scanner.

Values resolve from explicit CLI flags, then ``CILEAK_*`` environment variables, then
a config file, then the defaults below.
"""

from __future__ import annotations

import contextvars
from pathlib import Path

import yaml
from pydantic import BaseModel, ValidationError
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
    YamlConfigSettingsSource,
)

from ci_leak_scanner.errors import InvalidConfig

CONFIG_NAMES = ("cileak.yaml", "cileak.yml", "cileak.json", "cileak.toml")

_config_file: contextvars.ContextVar[Path | None] = contextvars.ContextVar("cileak_config_file", default=None)


class CommonSettings(BaseModel):
    threads: int = 4
    trufflehog_verification: bool = True
    artifacts: bool = False
    max_artifact_size: str = "500Mb"
    confidence_filter: list[str] = []
    hit_timeout: str = "60s"
    queue_dir: str = ""
    keep_queue: bool = False
    status_interval: str = "30s"
    proxy: str = ""
    ignore_proxy: bool = False


class LogSettings(BaseModel):
    level: str = "info"
    json_output: bool = False
    logfile: str = ""
    color: bool | None = None


class GitLabSettings(BaseModel):
    url: str = "https://gitlab.com"
    token: str = ""
    cookie: str = ""
    job_limit: int = 0
    terraform: bool = False
    tf_output_dir: str = ""


class GitHubSettings(BaseModel):
    url: str = "https://api.github.com"
    token: str = ""
    max_workflows: int = 0


class BitbucketSettings(BaseModel):
    url: str = "https://api.bitbucket.org/2.0"
    email: str = ""
    token: str = ""
    max_pipelines: int = 0


class AzureDevOpsSettings(BaseModel):
    url: str = "https://dev.azure.com"
    username: str = ""
    token: str = ""
    organization: str = ""
    max_builds: int = 0


class GiteaSettings(BaseModel):
    url: str = "https://gitea.com"
    token: str = ""
    runs_limit: int = 0


class Settings(BaseSettings):
    """Application settings with environment variable and config file overrides."""

    common: CommonSettings = CommonSettings()
    log: LogSettings = LogSettings()
    gitlab: GitLabSettings = GitLabSettings()
    github: GitHubSettings = GitHubSettings()
    bitbucket: BitbucketSettings = BitbucketSettings()
    azure_devops: AzureDevOpsSettings = AzureDevOpsSettings()
    gitea: GiteaSettings = GiteaSettings()

    model_config = SettingsConfigDict(env_prefix="CILEAK_", env_nested_delimiter="__", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        sources: tuple[PydanticBaseSettingsSource, ...] = (init_settings, env_settings)
        path = _config_file.get()
        if path is None:
            return sources
        suffix = path.suffix.lower()
        if suffix in (".yaml", ".yml"):
            return sources + (YamlConfigSettingsSource(settings_cls, yaml_file=path),)
        if suffix == ".json":
            return sources + (JsonConfigSettingsSource(settings_cls, json_file=path),)
        return sources + (TomlConfigSettingsSource(settings_cls, toml_file=path),)


def search_paths() -> list[Path]:
    home = Path.home()
    return [home / ".config" / "cileak", home, Path.cwd()]


def find_config_file() -> Path | None:
    """First ``cileak.{yaml,yml,json,toml}`` in ``~/.config/cileak``, ``~`` or ``.``."""
    for directory in search_paths():
        for name in CONFIG_NAMES:
            candidate = directory / name
            if candidate.is_file():
                return candidate
    return None


def load_settings(config_file: str = "") -> Settings:
    """Build settings from the environment and an explicit or discovered config file.

    Raises:
        InvalidConfig: the config file is missing, unreadable, malformed or has invalid values.
    """
    if config_file:
        path: Path | None = Path(config_file).expanduser()
        if not path.is_file():
            raise InvalidConfig(f"config file not found: {config_file}")
        if path.suffix.lower() not in (".yaml", ".yml", ".json", ".toml"):
            raise InvalidConfig(f"unsupported config file type {path.suffix!r}, expected yaml, json or toml")
    else:
        path = find_config_file()

    token = _config_file.set(path)
    try:
        return Settings()
    except ValidationError as exc:
        raise InvalidConfig(f"invalid configuration: {exc}") from exc
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise InvalidConfig(f"cannot read config file {path}: {exc}") from exc
    finally:
        _config_file.reset(token)
