"""
基于本地 Mock CA 的签发器，用于开发与测试。
"""

from __future__ import annotations

from typing import Optional, Tuple

from loguru import logger

from src.server.mockca.core import MockCertificateAuthority, get_default_ca
from .errors import CAInitializationError, SignerError


class MockCASigner:
    """在进程内签发证书；默认使用进程级共享的 Mock CA。"""

    def __init__(self, ca: Optional[MockCertificateAuthority] = None):
        self.ca = ca if ca is not None else get_default_ca()

    def check_health(self) -> None:
        try:
            self.ca.check_health()
        except CAInitializationError:
            logger.error("Mock CA 不可用")
            raise

    def sign(self, csr_pem: bytes, validity_days: int) -> Tuple[bytes, bytes]:
        try:
            return self.ca.sign(csr_pem, validity_days)
        except SignerError as e:
            logger.error(f"Mock CA 签发失败: {e}")
            raise
