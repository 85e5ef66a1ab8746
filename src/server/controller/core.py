"""
证书请求生命周期控制器。

对每个证书请求判断是否需要调用签发器，并把结果（或失败原因）写回请求对象：
- 非本控制器的签发者组/类型：忽略
- 已有证书或已处于终态（Ready=True / Failed / Denied）：不做任何事
- Denied=True：终态，只记录日志
- 尚未 Approved：等待，下次外部通知时重新评估（无内部轮询）
- 其余情况：解析签发者 -> 构造签发器 -> 健康检查 -> 签发 -> 写回

控制器从不设置 Approved/Denied，也不做内部重试；重试完全由下一次外部通知驱动。
终态写回之前没有任何副作用，超过截止时间的调和直接放弃，不会留下半签发状态。
"""

from __future__ import annotations

import math
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

import httpx
from loguru import logger

from .client import NotFoundError, ResourceClient
from .issuers import IssuerNotFound, build_signer, get_ready_issuer, signer_type_of
from .schemas import (
    CLUSTER_ISSUER_KIND,
    CONDITION_APPROVED,
    CONDITION_DENIED,
    CONDITION_READY,
    ISSUER_GROUP,
    ISSUER_KIND,
    REASON_DENIED,
    REASON_FAILED,
    REASON_ISSUED,
    REASON_ISSUER_NOT_FOUND,
    CertificateRequest,
    Condition,
    ConditionStatus,
    get_condition,
    is_condition_true,
    set_condition,
)
from src.server.config import Config, config as default_config
from src.server.mockca.core import MockCertificateAuthority
from src.server.signer.errors import HealthCheckFailed, InvalidCSRError, SignerError, SigningFailed

SECONDS_PER_DAY = 24 * 60 * 60


class ReconcileOutcome(str, Enum):
    NOT_FOUND = "NotFound"
    IGNORED = "Ignored"
    TERMINAL = "Terminal"
    DENIED = "Denied"
    AWAITING_APPROVAL = "AwaitingApproval"
    ISSUED = "Issued"
    FAILED = "Failed"
    ABANDONED = "Abandoned"


def is_in_terminal_state(request: CertificateRequest) -> bool:
    ready = get_condition(request.status.conditions, CONDITION_READY)
    if ready is None:
        return False
    return ready.status == ConditionStatus.TRUE or ready.reason in (REASON_FAILED, REASON_DENIED)


def is_approved(request: CertificateRequest) -> bool:
    return is_condition_true(request.status.conditions, CONDITION_APPROVED)


def is_denied(request: CertificateRequest) -> bool:
    return is_condition_true(request.status.conditions, CONDITION_DENIED)


def is_own_issuer(request: CertificateRequest) -> bool:
    ref = request.spec.issuer_ref
    return ref.group == ISSUER_GROUP and ref.kind in (ISSUER_KIND, CLUSTER_ISSUER_KIND)


def validity_days_for(request: CertificateRequest, settings: Config = default_config) -> int:
    """请求带 duration 时按天向上取整，否则使用默认有效期。"""
    duration = request.spec.duration
    if duration is None or duration.total_seconds() <= 0:
        return settings.default_validity_days
    return max(1, math.ceil(duration.total_seconds() / SECONDS_PER_DAY))


class DeadlineExceeded(Exception):
    """调和超过截止时间。"""


class CertificateRequestReconciler:
    """调和证书请求。每次调和只读取一个请求对象，并最多写回一次结果。"""

    def __init__(
        self,
        client: ResourceClient,
        settings: Config = default_config,
        mock_ca: Optional[MockCertificateAuthority] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.client = client
        self.settings = settings
        self.mock_ca = mock_ca
        self.http_client = http_client

    def reconcile(self, namespace: str, name: str, deadline: Optional[float] = None) -> ReconcileOutcome:
        """
        调和一个证书请求。
        :param namespace: 请求所在命名空间。
        :param name: 请求名称。
        :param deadline: time.monotonic() 截止时间；超过后放弃且不写回。
        :return: 本次调和的结果。
        """
        try:
            request = self.client.get_certificate_request(namespace, name)
        except NotFoundError:
            return ReconcileOutcome.NOT_FOUND

        if not is_own_issuer(request):
            return ReconcileOutcome.IGNORED

        if request.status.certificate or is_in_terminal_state(request):
            return ReconcileOutcome.TERMINAL

        if is_denied(request):
            logger.info(f"CertificateRequest 已被拒绝，跳过: {namespace}/{name}")
            return ReconcileOutcome.DENIED

        if not is_approved(request):
            logger.info(f"CertificateRequest 尚未批准，等待批准: {namespace}/{name}")
            return ReconcileOutcome.AWAITING_APPROVAL

        ref = request.spec.issuer_ref
        logger.info(f"处理 CertificateRequest: {namespace}/{name}, issuer={ref.kind}/{ref.name}")
        try:
            outcome, reason, message = self._issue(request, deadline)
        except DeadlineExceeded as e:
            logger.warning(f"CertificateRequest 调和超时，放弃本次处理: {namespace}/{name}: {e}")
            return ReconcileOutcome.ABANDONED

        if _expired(deadline):
            logger.warning(f"CertificateRequest 调和超时，放弃写回: {namespace}/{name}")
            return ReconcileOutcome.ABANDONED

        status = ConditionStatus.TRUE if outcome == ReconcileOutcome.ISSUED else ConditionStatus.FALSE
        self._set_ready(request, status, reason, message)
        return outcome

    def _timeout(self, deadline: Optional[float]) -> float:
        timeout = self.settings.pki_timeout_seconds
        if deadline is None:
            return timeout
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise DeadlineExceeded("no time left before signing")
        return min(timeout, remaining)

    def _issue(
        self, request: CertificateRequest, deadline: Optional[float]
    ) -> Tuple[ReconcileOutcome, str, str]:
        """执行签发流程，返回 (结果, reason, message)。只修改内存中的请求对象。"""
        ref = request.spec.issuer_ref
        try:
            issuer = get_ready_issuer(self.client, ref.kind, request.namespace, ref.name)
        except IssuerNotFound as e:
            logger.error(f"获取签发者失败: {e}")
            return ReconcileOutcome.FAILED, REASON_ISSUER_NOT_FOUND, str(e)

        try:
            signer = build_signer(
                self.client,
                issuer,
                settings=self.settings,
                mock_ca=self.mock_ca,
                http_client=self.http_client,
                timeout=self._timeout(deadline),
            )
        except SignerError as e:
            logger.error(f"构造签发器失败 ({e.reason}): {e}")
            return ReconcileOutcome.FAILED, e.reason, str(e)

        try:
            signer.check_health()
        except SignerError as e:
            logger.error(f"CA 健康检查失败: {e}")
            return ReconcileOutcome.FAILED, HealthCheckFailed.reason, str(e)

        validity_days = validity_days_for(request, self.settings)
        try:
            certificate, ca = signer.sign(request.spec.request, validity_days)
        except InvalidCSRError as e:
            # CSR 错误为终态
            logger.error(f"CSR 无效，请求进入终态: {e}")
            request.status.failure_time = datetime.now(timezone.utc)
            return ReconcileOutcome.FAILED, REASON_FAILED, f"{e.reason}: {e}"
        except SignerError as e:
            logger.error(f"签发证书失败: {e}")
            return ReconcileOutcome.FAILED, SigningFailed.reason, str(e)

        logger.info(
            f"证书签发成功: {request.namespace}/{request.name} (signer={signer_type_of(issuer)}, "
            f"validity_days={validity_days})"
        )
        request.status.certificate = certificate
        request.status.ca = ca
        return ReconcileOutcome.ISSUED, REASON_ISSUED, "Certificate issued successfully"

    def _set_ready(self, request: CertificateRequest, status: ConditionStatus, reason: str, message: str) -> None:
        set_condition(
            request.status.conditions,
            Condition(type=CONDITION_READY, status=status, reason=reason, message=message),
        )
        self.client.update_certificate_request_status(request)


def _expired(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


class IssuerReconciler:
    """检查签发者对应 CA 的健康状况，并维护签发者的 Ready 条件。"""

    def __init__(
        self,
        client: ResourceClient,
        settings: Config = default_config,
        mock_ca: Optional[MockCertificateAuthority] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.client = client
        self.settings = settings
        self.mock_ca = mock_ca
        self.http_client = http_client

    def reconcile(self, kind: str, namespace: str, name: str) -> Optional[bool]:
        """
        调和一个签发者。
        :return: 签发者是否就绪；签发者不存在时返回 None。
        """
        try:
            issuer = self.client.get_issuer(kind, namespace, name)
        except NotFoundError:
            return None

        logger.info(f"调和 {kind}: {namespace}/{name}" if namespace else f"调和 {kind}: {name}")
        signer_type = signer_type_of(issuer)
        try:
            signer = build_signer(
                self.client,
                issuer,
                settings=self.settings,
                mock_ca=self.mock_ca,
                http_client=self.http_client,
            )
            signer.check_health()
        except SignerError as e:
            logger.error(f"CA 健康检查失败: {e}")
            condition = Condition(
                type=CONDITION_READY,
                status=ConditionStatus.FALSE,
                reason=HealthCheckFailed.reason,
                message=str(e),
                observed_generation=issuer.generation,
            )
        else:
            condition = Condition(
                type=CONDITION_READY,
                status=ConditionStatus.TRUE,
                reason="Success",
                message=f"{signer_type} CA is healthy and ready",
                observed_generation=issuer.generation,
            )

        set_condition(issuer.conditions, condition)
        self.client.update_issuer_status(issuer)
        return condition.status == ConditionStatus.TRUE


def reconcile_concurrently(
    reconciler: CertificateRequestReconciler,
    keys: Iterable[Tuple[str, str]],
    max_workers: int = 4,
    timeout: Optional[float] = None,
) -> Dict[Tuple[str, str], ReconcileOutcome]:
    """
    并发调和多个证书请求，各请求之间互不共享状态、没有顺序要求。
    :param keys: (namespace, name) 列表。
    :param timeout: 每个请求的截止时间（秒）。
    """
    keys = list(keys)

    def _run(key: Tuple[str, str]) -> ReconcileOutcome:
        deadline = time.monotonic() + timeout if timeout else None
        return reconciler.reconcile(key[0], key[1], deadline=deadline)

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        outcomes = list(pool.map(_run, keys))
    return dict(zip(keys, outcomes))
