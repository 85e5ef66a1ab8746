"""
测试证书请求控制器（controller/core.py）。
"""

import time
from datetime import timedelta

import httpx
import pytest
from cryptography import x509
from fastapi import FastAPI
from fastapi.testclient import TestClient
from unittest.mock import MagicMock, patch

from src.server.config import Config
from src.server.controller import core
from src.server.controller.client import InMemoryClient
from src.server.controller.core import CertificateRequestReconciler, ReconcileOutcome, reconcile_concurrently
from src.server.controller.schemas import (
    CLUSTER_ISSUER_KIND,
    CertificateRequest,
    CertificateRequestSpec,
    Condition,
    ConditionStatus,
    ConfigMapReference,
    Issuer,
    IssuerRef,
    IssuerSpec,
    get_condition,
)
from src.server.mockca.router import router as mockca_router
from src.server.signer.errors import HealthCheckFailed, SigningFailed
from src.server.signer.schemas import legacy_pki_config

NAMESPACE = "apps"


def _ready() -> Condition:
    return Condition(type="Ready", status=ConditionStatus.TRUE, reason="Success")


def _approved() -> Condition:
    return Condition(type="Approved", status=ConditionStatus.TRUE, reason="cert-manager.io")


def _request(csr: bytes, name: str = "req", conditions=None, **ref) -> CertificateRequest:
    return CertificateRequest(
        name=name,
        namespace=NAMESPACE,
        spec=CertificateRequestSpec(request=csr, issuer_ref=IssuerRef(name=ref.pop("issuer", "issuer"), **ref)),
        status={"conditions": conditions if conditions is not None else [_approved()]},
    )


@pytest.fixture
def settings() -> Config:
    return Config(_env_file=None, default_validity_days=30, default_namespace="issuer-system")


@pytest.fixture
def store() -> InMemoryClient:
    client = InMemoryClient()
    client.put_issuer(Issuer(name="issuer", namespace=NAMESPACE, conditions=[_ready()]))
    return client


@pytest.fixture
def reconciler(store, settings, shared_ca) -> CertificateRequestReconciler:
    return CertificateRequestReconciler(store, settings=settings, mock_ca=shared_ca)


def _ready_condition(store: InMemoryClient, name: str = "req") -> Condition:
    return get_condition(store.get_certificate_request(NAMESPACE, name).status.conditions, "Ready")


def test_issues_with_mock_ca(store, reconciler, shared_ca, make_csr):
    store.put_certificate_request(_request(make_csr("svc.apps.example.com")))

    assert reconciler.reconcile(NAMESPACE, "req") == ReconcileOutcome.ISSUED

    saved = store.get_certificate_request(NAMESPACE, "req")
    cert = x509.load_pem_x509_certificate(saved.status.certificate)
    cert.verify_directly_issued_by(shared_ca.certificate)
    assert saved.status.ca == shared_ca.ca_pem
    ready = _ready_condition(store)
    assert ready.status == ConditionStatus.TRUE
    assert ready.reason == "Issued"
    assert ready.message == "Certificate issued successfully"
    assert ready.last_transition_time is not None
    # 默认有效期来自配置
    assert (cert.not_valid_after_utc - cert.not_valid_before_utc).days == 30


def test_duration_rounds_up_to_days(store, reconciler, make_csr):
    request = _request(make_csr("d.example.com"))
    request.spec.duration = timedelta(days=2, hours=1)
    store.put_certificate_request(request)

    reconciler.reconcile(NAMESPACE, "req")

    cert = x509.load_pem_x509_certificate(store.get_certificate_request(NAMESPACE, "req").status.certificate)
    assert (cert.not_valid_after_utc - cert.not_valid_before_utc).days == 3


def test_duration_beyond_date_range_fails_signing(store, reconciler, make_csr):
    """测试超出日期范围的有效期记为签发失败并写回一次"""
    request = _request(make_csr("far.example.com"))
    request.spec.duration = timedelta(days=3_000_000)
    store.put_certificate_request(request)

    assert reconciler.reconcile(NAMESPACE, "req") == ReconcileOutcome.FAILED

    saved = store.get_certificate_request(NAMESPACE, "req")
    ready = _ready_condition(store)
    assert ready.status == ConditionStatus.FALSE
    assert ready.reason == "SigningFailed"
    assert saved.status.certificate == b""
    assert saved.status.failure_time is None
    assert store.status_updates == 1


def test_second_reconcile_is_noop(store, reconciler, make_csr):
    """测试已签发的请求不会被重复签发"""
    store.put_certificate_request(_request(make_csr("once.example.com")))
    reconciler.reconcile(NAMESPACE, "req")
    first = store.get_certificate_request(NAMESPACE, "req").status.certificate

    assert reconciler.reconcile(NAMESPACE, "req") == ReconcileOutcome.TERMINAL
    assert store.get_certificate_request(NAMESPACE, "req").status.certificate == first
    assert store.status_updates == 1


def test_missing_request(reconciler):
    assert reconciler.reconcile(NAMESPACE, "nope") == ReconcileOutcome.NOT_FOUND


@pytest.mark.parametrize("ref", [{"group": "cert-manager.io"}, {"kind": "Issuer"}])
def test_foreign_issuer_is_ignored(store, reconciler, make_csr, ref):
    store.put_certificate_request(_request(make_csr("x.example.com"), **ref))
    assert reconciler.reconcile(NAMESPACE, "req") == ReconcileOutcome.IGNORED
    assert store.status_updates == 0


def test_awaiting_approval(store, reconciler, make_csr):
    store.put_certificate_request(_request(make_csr("x.example.com"), conditions=[]))
    assert reconciler.reconcile(NAMESPACE, "req") == ReconcileOutcome.AWAITING_APPROVAL
    assert store.status_updates == 0


def test_denied(store, reconciler, make_csr):
    denied = Condition(type="Denied", status=ConditionStatus.TRUE, reason="policy")
    store.put_certificate_request(_request(make_csr("x.example.com"), conditions=[denied]))
    assert reconciler.reconcile(NAMESPACE, "req") == ReconcileOutcome.DENIED
    assert store.status_updates == 0


@pytest.mark.parametrize(
    "ready",
    [
        Condition(type="Ready", status=ConditionStatus.FALSE, reason="Failed"),
        Condition(type="Ready", status=ConditionStatus.FALSE, reason="Denied"),
        Condition(type="Ready", status=ConditionStatus.TRUE, reason="Issued"),
    ],
)
def test_terminal_conditions(store, reconciler, make_csr, ready):
    store.put_certificate_request(_request(make_csr("x.example.com"), conditions=[_approved(), ready]))
    assert reconciler.reconcile(NAMESPACE, "req") == ReconcileOutcome.TERMINAL


def test_issuer_not_found(store, reconciler, make_csr):
    store.put_certificate_request(_request(make_csr("x.example.com"), issuer="missing"))

    assert reconciler.reconcile(NAMESPACE, "req") == ReconcileOutcome.FAILED
    ready = _ready_condition(store)
    assert ready.status == ConditionStatus.FALSE
    assert ready.reason == "IssuerNotFound"


def test_issuer_not_ready(store, reconciler, make_csr):
    store.put_issuer(Issuer(name="cold", namespace=NAMESPACE))
    store.put_certificate_request(_request(make_csr("x.example.com"), issuer="cold"))

    reconciler.reconcile(NAMESPACE, "req")
    assert _ready_condition(store).reason == "IssuerNotFound"
    assert "not ready" in _ready_condition(store).message


def test_retryable_failure_is_reevaluated(store, reconciler, make_csr):
    """测试非终态失败在下一次通知时重新处理"""
    store.put_certificate_request(_request(make_csr("x.example.com"), issuer="late"))
    reconciler.reconcile(NAMESPACE, "req")
    assert _ready_condition(store).reason == "IssuerNotFound"

    store.put_issuer(Issuer(name="late", namespace=NAMESPACE, conditions=[_ready()]))
    assert reconciler.reconcile(NAMESPACE, "req") == ReconcileOutcome.ISSUED
    assert _ready_condition(store).reason == "Issued"


def test_config_error_for_pki_without_config_map(store, reconciler, make_csr):
    store.put_issuer(Issuer(name="pki", namespace=NAMESPACE, spec=IssuerSpec(signer_type="pki"), conditions=[_ready()]))
    store.put_certificate_request(_request(make_csr("x.example.com"), issuer="pki"))

    reconciler.reconcile(NAMESPACE, "req")
    assert _ready_condition(store).reason == "ConfigError"


def test_unknown_signer_type(store, reconciler, make_csr):
    store.put_issuer(Issuer(name="odd", namespace=NAMESPACE, spec=IssuerSpec(signer_type="vault"), conditions=[_ready()]))
    store.put_certificate_request(_request(make_csr("x.example.com"), issuer="odd"))

    reconciler.reconcile(NAMESPACE, "req")
    assert _ready_condition(store).reason == "ConfigError"


def test_health_check_failure(store, reconciler, make_csr):
    signer = MagicMock()
    signer.check_health.side_effect = HealthCheckFailed("PKI 接口错误: 503")
    store.put_certificate_request(_request(make_csr("x.example.com")))

    with patch.object(core, "build_signer", return_value=signer):
        assert reconciler.reconcile(NAMESPACE, "req") == ReconcileOutcome.FAILED

    ready = _ready_condition(store)
    assert ready.reason == "HealthCheckFailed"
    assert "503" in ready.message
    signer.sign.assert_not_called()


def test_signing_failure(store, reconciler, make_csr):
    signer = MagicMock()
    signer.sign.side_effect = SigningFailed("PKI 接口错误: 403")
    store.put_certificate_request(_request(make_csr("x.example.com")))

    with patch.object(core, "build_signer", return_value=signer):
        reconciler.reconcile(NAMESPACE, "req")

    saved = store.get_certificate_request(NAMESPACE, "req")
    assert _ready_condition(store).reason == "SigningFailed"
    assert saved.status.certificate == b""
    assert saved.status.failure_time is None


def test_invalid_csr_is_terminal(store, reconciler):
    store.put_certificate_request(_request(b"not a csr"))

    assert reconciler.reconcile(NAMESPACE, "req") == ReconcileOutcome.FAILED
    saved = store.get_certificate_request(NAMESPACE, "req")
    ready = _ready_condition(store)
    assert ready.reason == "Failed"
    assert ready.message.startswith("InvalidCSR")
    assert saved.status.failure_time is not None

    assert reconciler.reconcile(NAMESPACE, "req") == ReconcileOutcome.TERMINAL


def test_expired_deadline_writes_nothing(store, reconciler, make_csr):
    store.put_certificate_request(_request(make_csr("x.example.com")))

    outcome = reconciler.reconcile(NAMESPACE, "req", deadline=time.monotonic() - 1)

    assert outcome == ReconcileOutcome.ABANDONED
    assert store.status_updates == 0
    assert store.get_certificate_request(NAMESPACE, "req").status.certificate == b""


def test_deadline_elapsed_during_signing(store, reconciler, make_csr):
    signer = MagicMock()
    signer.sign.side_effect = lambda csr, days: time.sleep(0.2) or (b"leaf", b"ca")
    store.put_certificate_request(_request(make_csr("x.example.com")))

    with patch.object(core, "build_signer", return_value=signer):
        outcome = reconciler.reconcile(NAMESPACE, "req", deadline=time.monotonic() + 0.1)

    assert outcome == ReconcileOutcome.ABANDONED
    assert store.status_updates == 0


def test_cluster_issuer_with_pki_signer(store, settings, default_ca, make_csr):
    """测试集群级签发者通过 PKI 签发器对接 Mock CA 旧版接口"""
    app = FastAPI()
    app.include_router(mockca_router)
    http_client = TestClient(app)

    config_json = legacy_pki_config("http://testserver/cgi/pki.cgi").model_dump_json(by_alias=True)
    store.put_config_map("issuer-system", "pki", {"pki-config.json": config_json})
    store.put_issuer(
        Issuer(
            kind=CLUSTER_ISSUER_KIND,
            name="legacy",
            spec=IssuerSpec(signer_type="pki", config_map_ref=ConfigMapReference(name="pki")),
            conditions=[_ready()],
        )
    )
    store.put_certificate_request(
        _request(make_csr("web.example.com", dns_names=["www.example.com"]), issuer="legacy", kind=CLUSTER_ISSUER_KIND)
    )

    reconciler = CertificateRequestReconciler(store, settings=settings, http_client=http_client)
    assert reconciler.reconcile(NAMESPACE, "req") == ReconcileOutcome.ISSUED

    saved = store.get_certificate_request(NAMESPACE, "req")
    x509.load_pem_x509_certificate(saved.status.certificate).verify_directly_issued_by(default_ca.certificate)
    assert saved.status.ca == default_ca.ca_pem


def test_pki_signer_uses_auth_secret(store, settings, make_csr, shared_ca):
    leaf_pem, _ = shared_ca.sign(make_csr("auth.example.com"), 1)
    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, content=leaf_pem + shared_ca.ca_pem)

    config_json = '{"baseUrl": "https://pki.example.com/issue", "auth": {"type": "header", "headerName": "X-API-Key"}}'
    store.put_config_map(NAMESPACE, "pki-config", {"custom.json": config_json})
    store.put_secret(NAMESPACE, "pki-token", {"api-key": b"s3cret\n"})
    store.put_issuer(
        Issuer(
            name="pki",
            namespace=NAMESPACE,
            spec=IssuerSpec(
                signer_type="PKI",
                config_map_ref=ConfigMapReference(name="pki-config", key="custom.json"),
                auth_secret_name="pki-token",
            ),
            conditions=[_ready()],
        )
    )
    store.put_certificate_request(_request(make_csr("auth.example.com"), issuer="pki"))

    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    reconciler = CertificateRequestReconciler(store, settings=settings, http_client=http_client)
    assert reconciler.reconcile(NAMESPACE, "req") == ReconcileOutcome.ISSUED

    assert [r.method for r in captured] == ["GET", "POST"]
    assert all(r.headers["X-API-Key"] == "s3cret" for r in captured)


def test_reconcile_concurrently(store, reconciler, make_csr):
    names = [f"req-{i}" for i in range(6)]
    for name in names:
        store.put_certificate_request(_request(make_csr(f"{name}.example.com"), name=name))

    outcomes = reconcile_concurrently(reconciler, [(NAMESPACE, n) for n in names], max_workers=3, timeout=30)

    assert set(outcomes.values()) == {ReconcileOutcome.ISSUED}
    serials = {
        x509.load_pem_x509_certificate(store.get_certificate_request(NAMESPACE, n).status.certificate).serial_number
        for n in names
    }
    assert len(serials) == len(names)


def test_reconcile_concurrently_keeps_batch_when_one_fails(store, reconciler, make_csr):
    """测试批量调和中单个请求签发失败不影响其余请求"""
    names = [f"req-{i}" for i in range(4)]
    for name in names:
        store.put_certificate_request(_request(make_csr(f"{name}.example.com"), name=name))
    far = _request(make_csr("far.example.com"), name="far")
    far.spec.duration = timedelta(days=3_000_000)
    store.put_certificate_request(far)

    keys = [(NAMESPACE, n) for n in names] + [(NAMESPACE, "far")]
    outcomes = reconcile_concurrently(reconciler, keys, max_workers=3, timeout=30)

    assert outcomes[(NAMESPACE, "far")] == ReconcileOutcome.FAILED
    assert all(outcomes[(NAMESPACE, n)] == ReconcileOutcome.ISSUED for n in names)
    assert _ready_condition(store, "far").reason == "SigningFailed"
    assert store.status_updates == len(keys)
