"""
Mock CA 的业务逻辑层。
此模块封装请求体解析与核心逻辑调用，为路由层提供清晰的接口。
"""

from __future__ import annotations

import json
from typing import Optional
from urllib.parse import parse_qs

from loguru import logger

from .core import VERSION, MockCertificateAuthority, get_default_ca, parse_legacy_params
from .schemas import HealthResponse, SignRequest, SignResponse
from src.server.config import config
from src.server.signer.encoder import load_csr


class SignRequestError(ValueError):
    """签发请求本身不合法（解析失败、缺少 CSR）。"""

    def __init__(self, code: str, message: str, details: str = ""):
        super().__init__(message)
        self.code = code
        self.details = details


def format_uptime(seconds: int) -> str:
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def health_service(ca: Optional[MockCertificateAuthority] = None) -> HealthResponse:
    """
    返回 CA 健康状态。
    :raises CAInitializationError: CA 初始化失败。
    """
    ca = ca or get_default_ca()
    ca.check_health()
    cert = ca.certificate
    return HealthResponse(
        status="healthy",
        version=VERSION,
        ca_subject=cert.subject.rfc4514_string(),
        ca_expires=cert.not_valid_after_utc.isoformat(),
        certificates_signed=ca.sign_count,
        uptime=format_uptime(ca.uptime_seconds),
    )


def ca_certificate_service(ca: Optional[MockCertificateAuthority] = None) -> bytes:
    """返回 PEM 格式的 CA 证书。"""
    return (ca or get_default_ca()).ca_pem


def parse_sign_request(body: bytes, content_type: str) -> SignRequest:
    """
    解析签发请求体：JSON、表单（csr 字段）或原始 PEM。
    :raises SignRequestError: JSON 无法解析或未提供 CSR。
    """
    if "application/json" in content_type:
        try:
            req = SignRequest.model_validate(json.loads(body or b"{}"))
        except ValueError as e:
            raise SignRequestError("PARSE_ERROR", "Failed to parse JSON request", str(e)) from e
    else:
        text = body.decode("utf-8", errors="replace")
        form_csr = ""
        if "application/x-www-form-urlencoded" in content_type:
            form_csr = parse_qs(text).get("csr", [""])[0]
        # 非表单时按原始 PEM 处理
        req = SignRequest(csr=form_csr or text)

    if not req.csr.strip():
        raise SignRequestError("MISSING_CSR", "No CSR provided in request")
    return req


def sign_service(req: SignRequest, ca: Optional[MockCertificateAuthority] = None) -> SignResponse:
    """
    处理签发请求。
    :raises InvalidCSRError / InvalidSignatureError: CSR 无效。
    :raises SigningFailed: 签发失败。
    """
    ca = ca or get_default_ca()
    csr = load_csr(req.csr)
    logger.info(f"CSR 解析成功: subject={csr.subject.rfc4514_string()}")

    validity_days = config.mockca_cert_validity_days
    if req.validity_days and req.validity_days > 0:
        validity_days = req.validity_days

    issued = ca.issue(csr, validity_days)
    cert_pem = issued.certificate_pem.decode("utf-8")
    ca_pem = ca.ca_pem.decode("utf-8")
    return SignResponse(
        certificate=cert_pem,
        certificate_chain=cert_pem + ca_pem,
        ca=ca_pem,
        serial_number=str(issued.serial_number),
        not_before=issued.not_before.isoformat(),
        not_after=issued.not_after.isoformat(),
        subject=issued.subject,
    )


def legacy_service(body: bytes, ca: Optional[MockCertificateAuthority] = None) -> bytes:
    """
    处理旧版 /cgi/pki.cgi 请求。
    :raises ValueError: 参数不合法。
    :raises CertificateNotFound: 读取目标不存在。
    """
    ca = ca or get_default_ca()
    text = body.decode("utf-8", errors="replace")
    logger.debug(f"PKI 请求体: {text}")
    params = parse_legacy_params(text)
    return ca.handle_legacy(params)
