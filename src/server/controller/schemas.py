"""
文件功能：
    定义证书请求与签发者资源的数据模型（Pydantic），以及条件列表的读写辅助函数。

公开接口：
    - CertificateRequest: 证书请求（CSR、签发者引用、条件、签发结果）
    - Issuer: ExternalIssuer / ExternalClusterIssuer
    - Condition / ConditionStatus: 条件
    - get_condition / set_condition / is_condition_true: 条件辅助函数

内部方法：
    无
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

ISSUER_GROUP = "external-issuer.io"
ISSUER_KIND = "ExternalIssuer"
CLUSTER_ISSUER_KIND = "ExternalClusterIssuer"

CONDITION_READY = "Ready"
CONDITION_APPROVED = "Approved"
CONDITION_DENIED = "Denied"

REASON_ISSUED = "Issued"
REASON_FAILED = "Failed"
REASON_DENIED = "Denied"
REASON_ISSUER_NOT_FOUND = "IssuerNotFound"

SIGNER_MOCKCA = "mockca"
SIGNER_PKI = "pki"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(BaseModel):
    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None
    observed_generation: Optional[int] = None


class IssuerRef(BaseModel):
    name: str
    kind: str = ISSUER_KIND
    group: str = ISSUER_GROUP


class CertificateRequestSpec(BaseModel):
    request: bytes = Field(description="PEM 格式的 CSR")
    issuer_ref: IssuerRef
    duration: Optional[timedelta] = Field(default=None, description="期望的证书有效期")


class CertificateRequestStatus(BaseModel):
    conditions: List[Condition] = Field(default_factory=list)
    certificate: bytes = b""
    ca: bytes = b""
    failure_time: Optional[datetime] = None


class CertificateRequest(BaseModel):
    """证书请求。由外部创建，只有控制器写入 Ready 条件与签发结果。"""

    name: str
    namespace: str = ""
    spec: CertificateRequestSpec
    status: CertificateRequestStatus = Field(default_factory=CertificateRequestStatus)


class ConfigMapReference(BaseModel):
    name: str
    namespace: str = ""
    key: str = ""


class IssuerSpec(BaseModel):
    url: str = ""
    config_map_ref: Optional[ConfigMapReference] = None
    auth_secret_name: str = ""
    signer_type: str = Field(default="", description="mockca 或 pki，留空时按 mockca 处理")


class Issuer(BaseModel):
    """ExternalIssuer（命名空间级）或 ExternalClusterIssuer（集群级，namespace 为空）。"""

    kind: str = ISSUER_KIND
    name: str
    namespace: str = ""
    generation: int = 1
    spec: IssuerSpec = Field(default_factory=IssuerSpec)
    conditions: List[Condition] = Field(default_factory=list)

    @property
    def is_cluster_scoped(self) -> bool:
        return self.kind == CLUSTER_ISSUER_KIND


def get_condition(conditions: List[Condition], condition_type: str) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_condition_true(conditions: List[Condition], condition_type: str) -> bool:
    condition = get_condition(conditions, condition_type)
    return condition is not None and condition.status == ConditionStatus.TRUE


def set_condition(conditions: List[Condition], condition: Condition) -> None:
    """原地替换同类型条件，不存在时追加。状态未变化时保留原 last_transition_time。"""
    existing = get_condition(conditions, condition.type)
    if condition.last_transition_time is None:
        if existing is not None and existing.status == condition.status:
            condition.last_transition_time = existing.last_transition_time
        condition.last_transition_time = condition.last_transition_time or datetime.now(timezone.utc)
    for i, c in enumerate(conditions):
        if c.type == condition.type:
            conditions[i] = condition
            return
    conditions.append(condition)
