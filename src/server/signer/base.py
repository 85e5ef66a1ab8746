"""
签发器的统一契约。PKI 签发器与 Mock CA 签发器都实现该接口，由控制器按配置选择。
"""

from __future__ import annotations

from typing import Protocol, Tuple, runtime_checkable


@runtime_checkable
class Signer(Protocol):
    def check_health(self) -> None:
        """检查 CA 是否可用，不可用时抛出异常。"""
        ...

    def sign(self, csr_pem: bytes, validity_days: int) -> Tuple[bytes, bytes]:
        """签发 CSR，返回 (叶子证书 PEM, CA 证书链 PEM)。"""
        ...
