"""
Mock CA 的核心逻辑实现。
包括自签 CA 的生成、CSR 签发，以及旧版 PKI 接口（分号参数、斜杠 DN）的证书存取。

CA 密钥对在进程生命周期内只生成一次；并发首次使用时由锁保证只生成一次。
旧版接口的证书存储按 CN 建索引，读写均在锁内完成。
"""

from __future__ import annotations

import secrets
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from loguru import logger
from pydantic import BaseModel

from src.server.config import config
from src.server.signer.encoder import load_csr
from src.server.signer.errors import CAInitializationError, SigningFailed

VERSION = "1.0.0"
RSA_KEY_SIZE = 2048
LEGACY_DNS_START_INDEX = 2
LEGACY_DNS_END_INDEX = 20

_SAN_TYPES = (x509.DNSName, x509.IPAddress, x509.UniformResourceIdentifier, x509.RFC822Name)

_DN_OIDS = {
    "CN": NameOID.COMMON_NAME,
    "O": NameOID.ORGANIZATION_NAME,
    "OU": NameOID.ORGANIZATIONAL_UNIT_NAME,
    "L": NameOID.LOCALITY_NAME,
    "ST": NameOID.STATE_OR_PROVINCE_NAME,
    "C": NameOID.COUNTRY_NAME,
}


class CertificateNotFound(LookupError):
    """旧版接口请求的证书/私钥/CSR 不存在。"""


class IssuedCertificate(BaseModel):
    certificate_pem: bytes
    serial_number: int
    not_before: datetime
    not_after: datetime
    subject: str


class StoredCertificate(BaseModel):
    """旧版接口按 CN 保存的签发结果。"""

    cert_pem: bytes
    key_pem: Optional[bytes] = None
    csr_pem: Optional[bytes] = None
    subject: str


def generate_serial_number() -> int:
    """生成 128 位随机正整数序列号。"""
    return secrets.randbelow(2**128 - 1) + 1


def parse_legacy_params(body: str) -> Dict[str, str]:
    """
    解析分号分隔的参数，例如 "new=1;subject=/C=US/CN=test.com;DNS2=alt.com;getCERT"。
    没有值的参数映射为空串。
    """
    params: Dict[str, str] = {}
    for raw in body.split(";"):
        part = raw.strip()
        if not part:
            continue
        key, sep, value = part.partition("=")
        if sep and key.strip():
            params[key.strip()] = value.strip()
        else:
            params[part] = ""
    return params


def parse_slash_dn(dn: str) -> x509.Name:
    """解析斜杠格式的 DN，例如 /C=US/ST=California/O=Example/CN=example.com。未知字段被忽略。"""
    attributes: List[x509.NameAttribute] = []
    for raw in dn.split("/"):
        key, sep, value = raw.strip().partition("=")
        oid = _DN_OIDS.get(key.strip().upper())
        if not sep or oid is None or not value.strip():
            continue
        try:
            attributes.append(x509.NameAttribute(oid, value.strip()))
        except ValueError as e:
            raise ValueError(f"无效的 DN 字段 {key}={value}: {e}") from e
    return x509.Name(attributes)


def _common_name(name: x509.Name) -> str:
    values = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(values[0].value) if values else ""


def _requested_sans(csr: x509.CertificateSigningRequest) -> List[x509.GeneralName]:
    try:
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return []
    return [name for name in san if isinstance(name, _SAN_TYPES)]


class MockCertificateAuthority:
    """
    自包含的自签 CA。

    状态: Uninitialized -> Ready（首次使用时生成密钥与根证书）。
    """

    def __init__(
        self,
        common_name: str = "External Issuer Mock CA",
        organization: str = "cert-manager-external-issuer",
        validity_years: int = 10,
        cert_validity_days: int = 365,
    ):
        self.common_name = common_name
        self.organization = organization
        self.validity_years = validity_years
        self.cert_validity_days = cert_validity_days
        self.started_at = time.monotonic()

        self._init_lock = threading.Lock()
        self._store_lock = threading.Lock()
        self._count_lock = threading.Lock()
        self._ready = False
        self._ca_key: Optional[rsa.RSAPrivateKey] = None
        self._ca_cert: Optional[x509.Certificate] = None
        self._ca_pem = b""
        self._sign_count = 0
        self._store: Dict[str, StoredCertificate] = {}

    # ------------------------------------------------------------------
    # 初始化
    # ------------------------------------------------------------------

    def ensure_ready(self) -> None:
        """
        生成 CA 密钥与自签根证书（仅一次）。
        :raises CAInitializationError: 密钥或证书生成失败。
        """
        if self._ready:
            return
        with self._init_lock:
            if self._ready:
                return
            logger.debug(f"生成 CA 私钥: RSA {RSA_KEY_SIZE}")
            try:
                ca_key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
                ca_cert = self._build_ca_certificate(ca_key)
            except Exception as e:
                logger.error(f"Mock CA 初始化失败: {e}")
                raise CAInitializationError(f"Mock CA 初始化失败: {e}") from e

            self._ca_key = ca_key
            self._ca_cert = ca_cert
            self._ca_pem = ca_cert.public_bytes(Encoding.PEM)
            self._ready = True
            logger.info(
                f"Mock CA 初始化完成: subject={ca_cert.subject.rfc4514_string()}, "
                f"serial={ca_cert.serial_number}, not_after={ca_cert.not_valid_after_utc.isoformat()}"
            )

    def _build_ca_certificate(self, ca_key: rsa.RSAPrivateKey) -> x509.Certificate:
        subject = x509.Name(
            [
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, self.organization),
                x509.NameAttribute(NameOID.COMMON_NAME, self.common_name),
            ]
        )
        now = datetime.now(timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(ca_key.public_key())
            .serial_number(generate_serial_number())
            .not_valid_before(now - timedelta(hours=1))
            .not_valid_after(now + timedelta(days=365 * self.validity_years))
            .add_extension(x509.BasicConstraints(ca=True, path_length=1), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_encipherment=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()), critical=False)
        )
        return builder.sign(private_key=ca_key, algorithm=hashes.SHA256())

    @property
    def certificate(self) -> x509.Certificate:
        self.ensure_ready()
        assert self._ca_cert is not None
        return self._ca_cert

    @property
    def ca_pem(self) -> bytes:
        self.ensure_ready()
        return self._ca_pem

    @property
    def sign_count(self) -> int:
        with self._count_lock:
            return self._sign_count

    @property
    def uptime_seconds(self) -> int:
        return int(time.monotonic() - self.started_at)

    def check_health(self) -> None:
        """确保 CA 可用。"""
        self.ensure_ready()

    # ------------------------------------------------------------------
    # 签发
    # ------------------------------------------------------------------

    def issue(self, csr: x509.CertificateSigningRequest, validity_days: int) -> IssuedCertificate:
        """
        使用 CA 对已校验的 CSR 签发叶子证书，CSR 中的 SAN 全部保留。
        :param csr: 已通过签名校验的 CSR。
        :param validity_days: 证书有效天数。
        :return: 签发结果。
        :raises SigningFailed: 签发失败。
        """
        self.ensure_ready()
        assert self._ca_key is not None and self._ca_cert is not None

        if validity_days <= 0:
            raise SigningFailed(f"有效期必须为正数: {validity_days}")

        serial = generate_serial_number()
        try:
            cert, not_before, not_after = self._sign_leaf(csr, serial, validity_days)
        except (OverflowError, ValueError, TypeError) as e:
            logger.error(f"签发证书失败: {e}")
            raise SigningFailed(f"签发证书失败: {e}") from e

        with self._count_lock:
            self._sign_count += 1
            total = self._sign_count

        subject = csr.subject.rfc4514_string()
        logger.info(
            f"证书签发成功: serial={serial}, subject={subject}, "
            f"not_after={not_after.isoformat()}, validity_days={validity_days}, total_signed={total}"
        )
        return IssuedCertificate(
            certificate_pem=cert.public_bytes(Encoding.PEM),
            serial_number=serial,
            not_before=not_before,
            not_after=not_after,
            subject=subject,
        )

    def _sign_leaf(
        self, csr: x509.CertificateSigningRequest, serial: int, validity_days: int
    ) -> Tuple[x509.Certificate, datetime, datetime]:
        """构造并签署叶子证书。超出日期范围时抛出 OverflowError / ValueError。"""
        assert self._ca_key is not None and self._ca_cert is not None
        now = datetime.now(timezone.utc)
        # NotBefore 回拨一分钟
        not_before = now - timedelta(minutes=1)
        not_after = now + timedelta(days=validity_days)

        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(self._ca_cert.subject)
            .public_key(csr.public_key())
            .serial_number(serial)
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    key_encipherment=True,
                    key_cert_sign=False,
                    crl_sign=False,
                    content_commitment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(self._ca_key.public_key()),
                critical=False,
            )
        )
        sans = _requested_sans(csr)
        if sans:
            builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)

        cert = builder.sign(private_key=self._ca_key, algorithm=hashes.SHA256())
        return cert, not_before, not_after

    def sign(self, csr_pem: bytes, validity_days: int) -> Tuple[bytes, bytes]:
        """
        校验 CSR 并签发证书。
        :return: (叶子证书 PEM, CA 证书 PEM)。
        :raises InvalidCSRError / InvalidSignatureError: CSR 无效。
        """
        self.ensure_ready()
        csr = load_csr(csr_pem)
        issued = self.issue(csr, validity_days)
        return issued.certificate_pem, self._ca_pem

    # ------------------------------------------------------------------
    # 旧版 PKI 接口
    # ------------------------------------------------------------------

    def lookup(self, common_name: str) -> Optional[StoredCertificate]:
        with self._store_lock:
            return self._store.get(common_name)

    def _issue_with_generated_key(self, subject: x509.Name, dns_names: List[str]) -> StoredCertificate:
        """为旧版接口生成私钥与 CSR，并签发证书。"""
        key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
        csr_builder = x509.CertificateSigningRequestBuilder().subject_name(subject)
        if dns_names:
            csr_builder = csr_builder.add_extension(
                x509.SubjectAlternativeName([x509.DNSName(d) for d in dns_names]),
                critical=False,
            )
        csr = csr_builder.sign(key, hashes.SHA256())
        issued = self.issue(csr, self.cert_validity_days)
        return StoredCertificate(
            cert_pem=issued.certificate_pem,
            key_pem=key.private_bytes(
                encoding=Encoding.PEM,
                format=PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=NoEncryption(),
            ),
            csr_pem=csr.public_bytes(Encoding.PEM),
            subject=issued.subject,
        )

    def handle_legacy(self, params: Dict[str, str]) -> bytes:
        """
        处理旧版接口请求。
        支持的意图（按优先级）：getCERT / getKEY / getCSR 读取已有内容；
        new=1 已存在则原样返回；renew=1 或不存在时重新签发。
        :param params: parse_legacy_params 的结果。
        :return: 响应体（PEM）。
        :raises ValueError: subject 缺失或不含 CN。
        :raises CertificateNotFound: 读取的目标不存在。
        """
        subject_dn = params.get("subject", "")
        if not subject_dn:
            raise ValueError("subject parameter is required")
        subject = parse_slash_dn(subject_dn)
        cn = _common_name(subject)
        if not cn:
            raise ValueError("subject must contain CN")

        if "getCERT" in params:
            stored = self.lookup(cn)
            if stored is None:
                raise CertificateNotFound("Certificate not found")
            return stored.cert_pem
        if "getKEY" in params:
            stored = self.lookup(cn)
            if stored is None or stored.key_pem is None:
                raise CertificateNotFound("Key not found")
            return stored.key_pem
        if "getCSR" in params:
            stored = self.lookup(cn)
            if stored is None or stored.csr_pem is None:
                raise CertificateNotFound("CSR not found")
            return stored.csr_pem

        dns_names = [cn]
        for i in range(LEGACY_DNS_START_INDEX, LEGACY_DNS_END_INDEX + 1):
            dns = params.get(f"DNS{i}", "")
            if dns and dns not in dns_names:
                dns_names.append(dns)

        is_new = params.get("new") == "1"
        is_renew = params.get("renew") == "1"
        self.ensure_ready()

        with self._store_lock:
            if is_new and not is_renew:
                existing = self._store.get(cn)
                if existing is not None:
                    logger.info(f"返回已存在的证书: cn={cn}")
                    return existing.cert_pem + self._ca_pem

            logger.info(f"生成新证书: cn={cn}, dns_names={dns_names}, new={is_new}, renew={is_renew}")
            stored = self._issue_with_generated_key(subject, dns_names)
            self._store[cn] = stored
        return stored.cert_pem + self._ca_pem


_default_ca: Optional[MockCertificateAuthority] = None
_default_ca_lock = threading.Lock()


def get_default_ca() -> MockCertificateAuthority:
    """返回进程级共享的 Mock CA（按全局配置创建）。"""
    global _default_ca
    with _default_ca_lock:
        if _default_ca is None:
            _default_ca = MockCertificateAuthority(
                common_name=config.mockca_ca_common_name,
                organization=config.mockca_ca_organization,
                validity_years=config.mockca_ca_validity_years,
                cert_validity_days=config.mockca_cert_validity_days,
            )
        return _default_ca
