"""
签发者配置解析。

读取签发者引用的 ConfigMap（PKI 协议配置）与 Secret（认证 token、受信任 CA），
并按 signerType 构造对应的签发器。
"""

from __future__ import annotations

from typing import Optional

import httpx
from loguru import logger
from pydantic import ValidationError

from .client import NotFoundError, ResourceClient
from .schemas import (
    CONDITION_READY,
    Issuer,
    SIGNER_MOCKCA,
    SIGNER_PKI,
    is_condition_true,
)
from src.server.config import Config, config as default_config
from src.server.mockca.core import MockCertificateAuthority
from src.server.signer.base import Signer
from src.server.signer.errors import AuthError, ConfigError
from src.server.signer.mock import MockCASigner
from src.server.signer.pki import PKISigner
from src.server.signer.schemas import PKIConfig

TOKEN_KEYS = ("token", "api-key", "password", "apiKey")
CA_KEYS = ("ca.crt", "ca.pem")


class IssuerNotFound(LookupError):
    """签发者不存在或尚未就绪。"""


def get_ready_issuer(client: ResourceClient, kind: str, namespace: str, name: str) -> Issuer:
    """
    读取签发者并确认其 Ready 条件为 True。
    :raises IssuerNotFound: 签发者不存在或未就绪。
    """
    try:
        issuer = client.get_issuer(kind, namespace, name)
    except NotFoundError as e:
        raise IssuerNotFound(f"failed to get {kind} {name}: {e}") from e
    if not is_condition_true(issuer.conditions, CONDITION_READY):
        label = name if issuer.is_cluster_scoped else f"{namespace}/{name}"
        raise IssuerNotFound(f"{kind} {label} is not ready")
    return issuer


def config_namespace(issuer: Issuer, settings: Config = default_config) -> str:
    """签发者引用的 ConfigMap/Secret 所在命名空间：命名空间级为自身命名空间，集群级为默认命名空间。"""
    if issuer.is_cluster_scoped or not issuer.namespace:
        return settings.default_namespace
    return issuer.namespace


def load_pki_config(client: ResourceClient, issuer: Issuer, settings: Config = default_config) -> PKIConfig:
    """
    从 ConfigMap 加载 PKI 协议配置。
    :raises ConfigError: ConfigMap/键不存在，或配置无法解析。
    """
    ref = issuer.spec.config_map_ref
    if ref is None:
        raise ConfigError(f"signerType=pki 需要 configMapRef: {issuer.kind} {issuer.name}")
    namespace = ref.namespace or config_namespace(issuer, settings)
    key = ref.key or settings.default_config_key

    try:
        data = client.get_config_map(namespace, ref.name)
    except NotFoundError as e:
        raise ConfigError(f"failed to get ConfigMap {namespace}/{ref.name}: {e}") from e
    if key not in data:
        raise ConfigError(f"key {key} not found in ConfigMap {namespace}/{ref.name}")

    try:
        return PKIConfig.model_validate_json(data[key])
    except ValidationError as e:
        raise ConfigError(f"failed to parse PKI config: {e}") from e


def load_auth_token(client: ResourceClient, secret_name: str, namespace: str) -> str:
    """
    从 Secret 读取认证 token，依次尝试 token / api-key / password / apiKey。
    :raises AuthError: Secret 不存在或不含任何候选键。
    """
    try:
        data = client.get_secret(namespace, secret_name)
    except NotFoundError as e:
        raise AuthError(f"failed to get secret {namespace}/{secret_name}: {e}") from e
    for key in TOKEN_KEYS:
        if key in data:
            return data[key].decode("utf-8").strip()
    raise AuthError(
        f"no token found in secret {namespace}/{secret_name} (tried: {', '.join(TOKEN_KEYS)})"
    )


def load_trusted_ca(client: ResourceClient, secret_name: str, namespace: str) -> bytes:
    """
    从 Secret 读取受信任的 CA 证书（ca.crt 或 ca.pem）。
    :raises ConfigError: Secret 不存在或不含 CA。
    """
    try:
        data = client.get_secret(namespace, secret_name)
    except NotFoundError as e:
        raise ConfigError(f"failed to get CA secret {namespace}/{secret_name}: {e}") from e
    for key in CA_KEYS:
        if key in data:
            return data[key]
    raise ConfigError(f"no CA certificate found in secret {namespace}/{secret_name} (tried: {', '.join(CA_KEYS)})")


def signer_type_of(issuer: Issuer) -> str:
    # 未设置时按 mockca 处理
    return (issuer.spec.signer_type or SIGNER_MOCKCA).lower()


def build_signer(
    client: ResourceClient,
    issuer: Issuer,
    settings: Config = default_config,
    mock_ca: Optional[MockCertificateAuthority] = None,
    http_client: Optional[httpx.Client] = None,
    timeout: Optional[float] = None,
) -> Signer:
    """
    按签发者配置构造签发器。
    :raises ConfigError: 配置缺失或无效。
    :raises AuthError: 认证凭据缺失。
    """
    signer_type = signer_type_of(issuer)
    if signer_type == SIGNER_MOCKCA:
        return MockCASigner(mock_ca)
    if signer_type != SIGNER_PKI:
        raise ConfigError(f"unknown signerType: {issuer.spec.signer_type}")

    pki_config = load_pki_config(client, issuer, settings)
    namespace = config_namespace(issuer, settings)

    token: Optional[str] = None
    secret_name = issuer.spec.auth_secret_name or (pki_config.auth.secret_ref if pki_config.auth else "")
    if secret_name:
        token = load_auth_token(client, secret_name, namespace)

    ca_pem: Optional[bytes] = None
    if pki_config.tls is not None and pki_config.tls.ca_secret_ref:
        ca_pem = load_trusted_ca(client, pki_config.tls.ca_secret_ref, namespace)

    logger.debug(f"使用 PKI 签发器: issuer={issuer.name}, url={pki_config.base_url}, auth={token is not None}")
    return PKISigner(
        pki_config,
        auth_token=token,
        ca_pem=ca_pem,
        timeout=timeout or settings.pki_timeout_seconds,
        client=http_client,
    )
