"""
PKI 接口的 HTTP 传输层。

负责把序列化后的参数以 GET 查询串或 POST 请求体发送出去，附加认证头，
并按 TLS 配置决定是否校验服务端证书。所有调用都带有超时。
"""

from __future__ import annotations

import ssl
from typing import Dict, Optional

import httpx
from loguru import logger

from .errors import ConfigError
from .schemas import PKIConfig

DEFAULT_TIMEOUT_SECONDS = 60.0

_CONTENT_TYPES = {
    "semicolon": "text/plain",
    "ampersand": "application/x-www-form-urlencoded",
}


def build_verify(config: PKIConfig, ca_pem: Optional[bytes] = None) -> ssl.SSLContext | bool:
    """
    根据 TLS 配置生成 httpx 的 verify 参数。默认校验证书。
    :param config: PKI 配置。
    :param ca_pem: 额外信任的 CA 证书（PEM）。
    :raises ConfigError: CA 证书无法加载。
    """
    tls = config.tls
    if tls is not None and tls.insecure_skip_verify:
        logger.warning(f"已关闭对 {config.base_url} 的 TLS 证书校验")
        return False
    if ca_pem:
        try:
            return ssl.create_default_context(cadata=ca_pem.decode("utf-8"))
        except (ssl.SSLError, ValueError) as e:
            raise ConfigError(f"加载受信任 CA 失败: {e}") from e
    return True


class PKITransport:
    """发送签发与探活请求的 HTTP 客户端。"""

    def __init__(
        self,
        config: PKIConfig,
        auth_token: Optional[str] = None,
        ca_pem: Optional[bytes] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        self.config = config
        self.auth_token = auth_token
        self.timeout = timeout
        self._client = client
        self._verify = build_verify(config, ca_pem) if client is None else True

    def auth_headers(self) -> Dict[str, str]:
        """按认证类型生成请求头。未提供 token 时不附加任何头。"""
        auth = self.config.auth
        if auth is None or not self.auth_token:
            return {}
        if auth.type == "bearer":
            return {"Authorization": f"Bearer {self.auth_token}"}
        if auth.type == "basic":
            # token 由调用方预先编码
            return {"Authorization": f"Basic {self.auth_token}"}
        if auth.type == "header" and auth.header_name:
            return {auth.header_name: self.auth_token}
        return {}

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {**kwargs.pop("headers", {}), **self.auth_headers()}
        if self._client is not None:
            return self._client.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        with httpx.Client(verify=self._verify, timeout=self.timeout) as client:
            return client.request(method, url, headers=headers, **kwargs)

    def send(self, body: str) -> httpx.Response:
        """
        发送签发请求。
        :param body: 已按配置格式序列化的参数。
        :return: 原始 HTTP 响应。
        :raises httpx.HTTPError: 连接失败或超时。
        """
        base_url = self.config.base_url
        param_format = self.config.parameters.param_format
        if self.config.method == "GET":
            separator = "&" if "?" in base_url else "?"
            url = f"{base_url}{separator}{body}" if body else base_url
            logger.debug(f"GET {base_url} (format={param_format})")
            return self._request("GET", url)

        logger.debug(f"POST {base_url} (format={param_format}, size={len(body)})")
        return self._request(
            "POST",
            base_url,
            content=body.encode("utf-8"),
            headers={"Content-Type": _CONTENT_TYPES[param_format]},
        )

    def probe(self) -> httpx.Response:
        """对 base URL 发起 GET 请求，用于健康检查。"""
        return self._request("GET", self.config.base_url)
