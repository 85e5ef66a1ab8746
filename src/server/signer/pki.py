"""
通过外部 PKI 接口签发证书。

将 CSR 编码、请求构造、HTTP 传输与响应解析组合为统一的
check_health() / sign() 契约。任一阶段失败都会抛出该阶段的专用异常，不返回部分结果。
"""

from __future__ import annotations

from typing import Optional, Tuple

import httpx
from loguru import logger

from .encoder import parse_csr
from .errors import HealthCheckFailed, SigningFailed
from .response import parse_response
from .schemas import PKIConfig, RequestAction
from .template import build_request_params, serialize_params
from .transport import DEFAULT_TIMEOUT_SECONDS, PKITransport


def _preview(response: httpx.Response, limit: int = 200) -> str:
    return response.text[:limit]


class PKISigner:
    """外部 PKI 签发器。配置在一次签发过程中不会被修改。"""

    def __init__(
        self,
        config: PKIConfig,
        auth_token: Optional[str] = None,
        ca_pem: Optional[bytes] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        self.config = config
        self.transport = PKITransport(config, auth_token=auth_token, ca_pem=ca_pem, timeout=timeout, client=client)

    def check_health(self) -> None:
        """
        对 base URL 发起 GET 请求。只要有响应且状态码 < 500 即视为健康，
        远端无需真正支持 GET。
        :raises HealthCheckFailed: 连接失败或返回 5xx。
        """
        try:
            response = self.transport.probe()
        except httpx.HTTPError as e:
            raise HealthCheckFailed(f"连接 PKI 接口失败: {e}") from e
        if response.status_code >= 500:
            raise HealthCheckFailed(f"PKI 接口错误: {response.status_code}, {_preview(response)}")
        logger.debug(f"PKI 接口健康检查通过: {self.config.base_url} -> {response.status_code}")

    def sign(
        self,
        csr_pem: bytes,
        validity_days: int,
        action: Optional[RequestAction] = RequestAction.NEW,
    ) -> Tuple[bytes, bytes]:
        """
        签发证书。
        :param csr_pem: PEM 格式的 CSR。
        :param validity_days: 期望的有效天数（远端协议不支持时仅记录日志）。
        :param action: 请求动作，决定附加 new 还是 renew 参数。
        :return: (叶子证书 PEM, CA 证书链 PEM)。
        :raises InvalidCSRError / InvalidSignatureError: CSR 无效。
        :raises SigningFailed: 请求失败或响应无法解析。
        """
        _, subject = parse_csr(csr_pem)
        params_cfg = self.config.parameters
        csr_text = csr_pem.decode("utf-8") if isinstance(csr_pem, bytes) else csr_pem
        params = build_request_params(subject, params_cfg, action=action, csr_pem=csr_text)
        body = serialize_params(params, params_cfg.param_format)

        logger.info(
            f"向 PKI 接口发起签发请求: url={self.config.base_url}, method={self.config.method}, "
            f"subject={subject.dn_common_name}, dns={len(subject.dns_names)}, validity_days={validity_days}"
        )
        try:
            response = self.transport.send(body)
        except httpx.HTTPError as e:
            raise SigningFailed(f"请求 PKI 接口失败: {e}") from e

        if response.status_code != 200:
            raise SigningFailed(f"PKI 接口错误: {response.status_code}, {_preview(response)}")

        leaf, chain = parse_response(response.content, self.config.response)
        logger.info(f"PKI 接口签发成功: subject={subject.dn_common_name}, chain_size={len(chain)}")
        return leaf, chain
