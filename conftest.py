"""
测试公共夹具：CSR 生成工厂与独立的 Mock CA 实例。
"""

from typing import List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from src.server.mockca import core as mockca_core


def build_csr(
    common_name: str = "example.com",
    dns_names: Optional[List[str]] = None,
    organization: str = "",
    organizational_unit: str = "",
    locality: str = "",
    province: str = "",
    country: str = "",
    key=None,
) -> bytes:
    """生成 PEM 格式的 CSR。"""
    key = key or ec.generate_private_key(ec.SECP256R1())
    attributes = []
    for oid, value in (
        (NameOID.COUNTRY_NAME, country),
        (NameOID.STATE_OR_PROVINCE_NAME, province),
        (NameOID.LOCALITY_NAME, locality),
        (NameOID.ORGANIZATION_NAME, organization),
        (NameOID.ORGANIZATIONAL_UNIT_NAME, organizational_unit),
        (NameOID.COMMON_NAME, common_name),
    ):
        if value:
            attributes.append(x509.NameAttribute(oid, value))

    builder = x509.CertificateSigningRequestBuilder().subject_name(x509.Name(attributes))
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in dns_names]),
            critical=False,
        )
    csr = builder.sign(key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM)


@pytest.fixture
def make_csr():
    """返回 CSR 工厂函数。"""
    return build_csr


@pytest.fixture
def csr_pem() -> bytes:
    return build_csr("example.com", dns_names=["example.com", "www.example.com"], organization="Example", country="US")


@pytest.fixture(scope="session")
def shared_ca() -> mockca_core.MockCertificateAuthority:
    """整个测试会话共享的 Mock CA，避免重复生成 RSA 密钥。"""
    ca = mockca_core.MockCertificateAuthority(common_name="Test Mock CA", organization="Test Org")
    ca.ensure_ready()
    return ca


@pytest.fixture
def mock_ca() -> mockca_core.MockCertificateAuthority:
    """每个测试独立的 Mock CA（旧版接口存储互不影响）。"""
    return mockca_core.MockCertificateAuthority(common_name="Test Mock CA", organization="Test Org")


@pytest.fixture
def default_ca(monkeypatch, mock_ca):
    """将进程级共享 CA 替换为测试实例。"""
    monkeypatch.setattr(mockca_core, "_default_ca", mock_ca)
    return mock_ca
