"""
文件功能：
    外部 PKI 协议的声明式配置模型（Pydantic）。配置文档使用 camelCase 字段名，
    与 ConfigMap 中的 pki-config.json 保持一致。

公开接口：
    - PKIConfig: 完整的 PKI 协议配置
    - PKIParameters / PKIResponse / PKIAuth / PKITLS: 子配置
    - RequestAction: 请求动作（new / renew）
    - DEFAULT_DNS_START_INDEX / DEFAULT_DNS_MAX_COUNT: SAN 参数默认值
    - legacy_pki_config: 对接 Mock CA 旧版 /cgi/pki.cgi 接口的配置

内部方法：
    - _blank_to_default: 将空字符串视为未设置
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_DNS_START_INDEX = 2
DEFAULT_DNS_MAX_COUNT = 20


class RequestAction(str, Enum):
    NEW = "new"
    RENEW = "renew"


def _blank_to_default(value: Any, default: str) -> Any:
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return default
    if isinstance(value, str):
        return value.strip().lower()
    return value


class _ConfigModel(BaseModel):
    # 一次签发过程中配置不可变
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class PKIParameters(_ConfigModel):
    """请求参数的构造方式。"""

    param_format: Literal["ampersand", "semicolon"] = Field(default="ampersand", alias="paramFormat")
    subject_dn_format: Literal["comma", "slash"] = Field(default="comma", alias="subjectDNFormat")
    new_cert_param: str = Field(default="", alias="newCertParam")
    new_cert_value: str = Field(default="", alias="newCertValue")
    renew_cert_param: str = Field(default="", alias="renewCertParam")
    renew_cert_value: str = Field(default="", alias="renewCertValue")
    subject_param: str = Field(default="", alias="subjectParam")
    dns_prefix: str = Field(default="", alias="dnsPrefix")
    dns_start_index: Optional[int] = Field(default=None, alias="dnsStartIndex")
    dns_max_count: Optional[int] = Field(default=None, alias="dnsMaxCount")
    get_cert_param: str = Field(default="", alias="getCertParam")
    csr_param: str = Field(default="", alias="getCSRParam", description="以该参数名随请求发送 CSR PEM")

    @field_validator("param_format", mode="before")
    @classmethod
    def _param_format_default(cls, value: Any) -> Any:
        return _blank_to_default(value, "ampersand")

    @field_validator("subject_dn_format", mode="before")
    @classmethod
    def _dn_format_default(cls, value: Any) -> Any:
        return _blank_to_default(value, "comma")

    @property
    def effective_dns_start_index(self) -> int:
        if self.dns_start_index is None:
            return DEFAULT_DNS_START_INDEX
        return self.dns_start_index

    @property
    def effective_dns_max_count(self) -> int:
        if self.dns_max_count is None or self.dns_max_count <= 0:
            return DEFAULT_DNS_MAX_COUNT
        return self.dns_max_count


class PKIResponse(_ConfigModel):
    """响应解析方式。json 格式下字段支持以 "." 分隔的路径。"""

    format: Literal["pem", "json", "base64"] = "pem"
    certificate_field: str = Field(default="", alias="certificateField")
    chain_field: str = Field(default="", alias="chainField")

    @field_validator("format", mode="before")
    @classmethod
    def _format_default(cls, value: Any) -> Any:
        return _blank_to_default(value, "pem")


class PKIAuth(_ConfigModel):
    type: Literal["none", "bearer", "basic", "header"] = "none"
    header_name: str = Field(default="", alias="headerName")
    secret_ref: str = Field(default="", alias="secretRef")

    @field_validator("type", mode="before")
    @classmethod
    def _type_default(cls, value: Any) -> Any:
        return _blank_to_default(value, "none")


class PKITLS(_ConfigModel):
    insecure_skip_verify: bool = Field(default=False, alias="insecureSkipVerify")
    ca_secret_ref: str = Field(default="", alias="caSecretRef")


class PKIConfig(_ConfigModel):
    """外部 PKI 接口的完整描述。"""

    base_url: str = Field(alias="baseUrl")
    method: str = "POST"
    parameters: PKIParameters = Field(default_factory=PKIParameters)
    response: PKIResponse = Field(default_factory=PKIResponse)
    auth: Optional[PKIAuth] = None
    tls: Optional[PKITLS] = None

    @field_validator("base_url")
    @classmethod
    def _require_base_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("baseUrl 不能为空")
        return value

    @field_validator("method", mode="before")
    @classmethod
    def _method_default(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "POST"
        if isinstance(value, str):
            value = value.strip().upper()
            if value not in ("GET", "POST"):
                raise ValueError(f"不支持的 HTTP 方法: {value}")
        return value


def legacy_pki_config(base_url: str) -> PKIConfig:
    """返回驱动 PKI 签发器访问 Mock CA 旧版接口（/cgi/pki.cgi）的配置。"""
    return PKIConfig(
        base_url=base_url,
        method="POST",
        parameters=PKIParameters(
            param_format="semicolon",
            subject_dn_format="slash",
            new_cert_param="new",
            new_cert_value="1",
            renew_cert_param="renew",
            renew_cert_value="1",
            subject_param="subject",
            dns_prefix="DNS",
            dns_start_index=DEFAULT_DNS_START_INDEX,
            dns_max_count=DEFAULT_DNS_MAX_COUNT,
        ),
        response=PKIResponse(format="pem"),
    )
