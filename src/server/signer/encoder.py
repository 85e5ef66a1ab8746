"""
CSR 主题与 SAN 编码。

将经过签名校验的 CSR 转换为与线路格式无关的主题表示：CN、按顺序排列的
O/OU/L/ST/C 列表以及 DNS 名称列表，IP/URI/邮箱 SAN 原样透传。
"""

from __future__ import annotations

from cryptography import x509
from cryptography.x509.oid import NameOID
from loguru import logger
from pydantic import BaseModel, Field

from .errors import InvalidCSRError, InvalidSignatureError


class CSRSubject(BaseModel):
    """CSR 主题的规范化表示。"""

    common_name: str = ""
    organizational_unit: list[str] = Field(default_factory=list)
    organization: list[str] = Field(default_factory=list)
    locality: list[str] = Field(default_factory=list)
    province: list[str] = Field(default_factory=list)
    country: list[str] = Field(default_factory=list)
    dns_names: list[str] = Field(default_factory=list)
    ip_addresses: list[str] = Field(default_factory=list)
    uris: list[str] = Field(default_factory=list)
    email_addresses: list[str] = Field(default_factory=list)

    @property
    def dn_common_name(self) -> str:
        """用于拼接 DN 的 CN：CN 为空时回退到第一个 DNS 名称。"""
        if self.common_name:
            return self.common_name
        return self.dns_names[0] if self.dns_names else ""


def load_csr(csr_pem: bytes | str) -> x509.CertificateSigningRequest:
    """
    解析 PEM 格式的 CSR 并校验其自签名。
    :param csr_pem: PEM 编码的 CSR。
    :return: 解析后的 CSR 对象。
    :raises InvalidCSRError: PEM 无法解析。
    :raises InvalidSignatureError: CSR 签名与其公钥不匹配。
    """
    if isinstance(csr_pem, str):
        csr_pem = csr_pem.encode("utf-8")
    if b"-----BEGIN CERTIFICATE REQUEST-----" not in csr_pem:
        raise InvalidCSRError("无效的 CSR PEM")
    try:
        csr = x509.load_pem_x509_csr(csr_pem)
    except ValueError as e:
        raise InvalidCSRError(f"解析 CSR 失败: {e}") from e

    if not csr.is_signature_valid:
        logger.warning(f"CSR 签名校验失败: subject={csr.subject.rfc4514_string()}")
        raise InvalidSignatureError("CSR 签名校验失败")
    return csr


def _values(name: x509.Name, oid: x509.ObjectIdentifier) -> list[str]:
    return [str(attr.value) for attr in name.get_attributes_for_oid(oid)]


def encode_subject(csr: x509.CertificateSigningRequest) -> CSRSubject:
    """从 CSR 中提取主题与 SAN。不修改 CSR 本身。"""
    name = csr.subject
    common_names = _values(name, NameOID.COMMON_NAME)

    try:
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        san = None

    subject = CSRSubject(
        common_name=common_names[0] if common_names else "",
        organizational_unit=_values(name, NameOID.ORGANIZATIONAL_UNIT_NAME),
        organization=_values(name, NameOID.ORGANIZATION_NAME),
        locality=_values(name, NameOID.LOCALITY_NAME),
        province=_values(name, NameOID.STATE_OR_PROVINCE_NAME),
        country=_values(name, NameOID.COUNTRY_NAME),
    )
    if san is not None:
        subject.dns_names = list(san.get_values_for_type(x509.DNSName))
        subject.ip_addresses = [str(ip) for ip in san.get_values_for_type(x509.IPAddress)]
        subject.uris = list(san.get_values_for_type(x509.UniformResourceIdentifier))
        subject.email_addresses = list(san.get_values_for_type(x509.RFC822Name))
    return subject


def parse_csr(csr_pem: bytes | str) -> tuple[x509.CertificateSigningRequest, CSRSubject]:
    """解析、校验并编码 CSR。"""
    csr = load_csr(csr_pem)
    return csr, encode_subject(csr)
