"""
资源读写客户端。

控制器通过 ResourceClient 读取证书请求、签发者、配置与凭据，并回写状态。
真实环境由外部的资源监听/存储实现该协议；InMemoryClient 用于独立运行与测试。
"""

from __future__ import annotations

import threading
from typing import Dict, Protocol, Tuple

from .schemas import CertificateRequest, Issuer, CLUSTER_ISSUER_KIND


class NotFoundError(LookupError):
    """请求的资源不存在。"""


class ResourceClient(Protocol):
    def get_certificate_request(self, namespace: str, name: str) -> CertificateRequest: ...

    def update_certificate_request_status(self, request: CertificateRequest) -> None: ...

    def get_issuer(self, kind: str, namespace: str, name: str) -> Issuer: ...

    def update_issuer_status(self, issuer: Issuer) -> None: ...

    def get_config_map(self, namespace: str, name: str) -> Dict[str, str]: ...

    def get_secret(self, namespace: str, name: str) -> Dict[str, bytes]: ...


class InMemoryClient:
    """线程安全的内存实现。读取时返回深拷贝，调用方之间不共享对象。"""

    def __init__(self):
        self._lock = threading.Lock()
        self._requests: Dict[Tuple[str, str], CertificateRequest] = {}
        self._issuers: Dict[Tuple[str, str, str], Issuer] = {}
        self._config_maps: Dict[Tuple[str, str], Dict[str, str]] = {}
        self._secrets: Dict[Tuple[str, str], Dict[str, bytes]] = {}
        self.status_updates = 0

    @staticmethod
    def _issuer_key(kind: str, namespace: str, name: str) -> Tuple[str, str, str]:
        # 集群级签发者不区分命名空间
        return (kind, "" if kind == CLUSTER_ISSUER_KIND else namespace, name)

    def put_certificate_request(self, request: CertificateRequest) -> None:
        with self._lock:
            self._requests[(request.namespace, request.name)] = request.model_copy(deep=True)

    def put_issuer(self, issuer: Issuer) -> None:
        with self._lock:
            key = self._issuer_key(issuer.kind, issuer.namespace, issuer.name)
            self._issuers[key] = issuer.model_copy(deep=True)

    def put_config_map(self, namespace: str, name: str, data: Dict[str, str]) -> None:
        with self._lock:
            self._config_maps[(namespace, name)] = dict(data)

    def put_secret(self, namespace: str, name: str, data: Dict[str, bytes]) -> None:
        with self._lock:
            self._secrets[(namespace, name)] = dict(data)

    def get_certificate_request(self, namespace: str, name: str) -> CertificateRequest:
        with self._lock:
            request = self._requests.get((namespace, name))
            if request is None:
                raise NotFoundError(f"CertificateRequest {namespace}/{name} not found")
            return request.model_copy(deep=True)

    def update_certificate_request_status(self, request: CertificateRequest) -> None:
        with self._lock:
            key = (request.namespace, request.name)
            if key not in self._requests:
                raise NotFoundError(f"CertificateRequest {request.namespace}/{request.name} not found")
            self._requests[key] = request.model_copy(deep=True)
            self.status_updates += 1

    def get_issuer(self, kind: str, namespace: str, name: str) -> Issuer:
        with self._lock:
            issuer = self._issuers.get(self._issuer_key(kind, namespace, name))
            if issuer is None:
                raise NotFoundError(f"{kind} {namespace}/{name} not found")
            return issuer.model_copy(deep=True)

    def update_issuer_status(self, issuer: Issuer) -> None:
        with self._lock:
            key = self._issuer_key(issuer.kind, issuer.namespace, issuer.name)
            if key not in self._issuers:
                raise NotFoundError(f"{issuer.kind} {issuer.namespace}/{issuer.name} not found")
            self._issuers[key] = issuer.model_copy(deep=True)

    def get_config_map(self, namespace: str, name: str) -> Dict[str, str]:
        with self._lock:
            data = self._config_maps.get((namespace, name))
            if data is None:
                raise NotFoundError(f"ConfigMap {namespace}/{name} not found")
            return dict(data)

    def get_secret(self, namespace: str, name: str) -> Dict[str, bytes]:
        with self._lock:
            data = self._secrets.get((namespace, name))
            if data is None:
                raise NotFoundError(f"Secret {namespace}/{name} not found")
            return dict(data)
