"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类
- config: Config 的单例实例
- config_file_path: 当前生效的 JSON 配置文件路径
内部方法：
- JsonConfigFileSource: JSON 配置文件来源，支持按段落分组（mockca / default / pki）
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.check_positive: 校验数值型配置为正数
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from loguru import logger
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, PydanticBaseSettingsSource

CONFIG_FILE_ENV = "CONFIG_FILE"
DEFAULT_CONFIG_FILE = "config.json"


def config_file_path() -> Path:
    """CONFIG_FILE 指定的路径，未设置时为工作目录下的 config.json。"""
    cfg_path = os.environ.get(CONFIG_FILE_ENV)
    return Path(cfg_path) if cfg_path else Path.cwd() / DEFAULT_CONFIG_FILE


def flatten_sections(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    把分段写法展开为字段名：{"mockca": {"port": 9000}} -> {"mockca_port": 9000}。
    顶层同名键优先于分段中的键。
    """
    flat: Dict[str, Any] = {}
    for section, value in data.items():
        if isinstance(value, dict):
            for key, item in value.items():
                flat.setdefault(f"{section}_{key}", item)
    for key, value in data.items():
        if not isinstance(value, dict):
            flat[key] = value
    return flat


class JsonConfigFileSource(PydanticBaseSettingsSource):
    """从 JSON 配置文件读取 Mock CA 与控制器配置。文件缺失时为空，无法解析时记录警告后忽略。"""

    def __init__(self, settings_cls: type[BaseSettings], path: Optional[Path] = None):
        super().__init__(settings_cls)
        self.path = path
        self._data: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if self._data is None:
            self._data = self._read(self.path or config_file_path())
        return self._data

    @staticmethod
    def _read(path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"读取配置文件失败，已忽略: {path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"配置文件顶层必须为 JSON 对象，已忽略: {path}")
            return {}
        return flatten_sections(data)

    def __call__(self) -> Dict[str, Any]:
        data = self._load()
        return {name: data[name] for name in self.settings_cls.model_fields if name in data}

    def get_field_value(self, field, field_name):  # type: ignore[override]
        data = self._load()
        if field_name in data:
            return data[field_name], field_name, True
        return None, field_name, False


class Config(BaseSettings):
    # Mock CA 服务
    mockca_host: str = "0.0.0.0"
    mockca_port: int = 8080
    mockca_log_level: str = "INFO"
    mockca_log_format: str = "text"
    mockca_ca_common_name: str = "External Issuer Mock CA"
    mockca_ca_organization: str = "cert-manager-external-issuer"
    mockca_ca_validity_years: int = 10
    mockca_cert_validity_days: int = 365

    # 证书请求控制器
    default_validity_days: int = 365
    default_namespace: str = "external-issuer-system"
    default_config_key: str = "pki-config.json"
    pki_timeout_seconds: float = 60.0

    # pydantic v2 风格配置（等价于旧版的 class Config）
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator(
        "mockca_port",
        "mockca_ca_validity_years",
        "mockca_cert_validity_days",
        "default_validity_days",
        "pki_timeout_seconds",
    )
    @classmethod
    def check_positive(cls, value: Any) -> Any:
        if value <= 0:
            raise ValueError("必须为正数")
        return value

    @field_validator("mockca_log_format")
    @classmethod
    def check_log_format(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("text", "json"):
            raise ValueError("日志格式只支持 text 或 json")
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > JSON 配置文件 > secrets。"""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigFileSource(settings_cls),
            file_secret_settings,
        )


config = Config()
