"""
文件功能：
    根据 CSR 主题与声明式配置构造请求参数，并按配置的拼接格式序列化。

公开接口：
    - build_subject_dn: 按 comma / slash 顺序拼接主题 DN
    - build_request_params: 生成有序参数集合
    - serialize_params: 按 ampersand / semicolon 格式序列化参数

说明：
    semicolon 格式不做任何转义，调用方需保证参数值中不包含 ";"。
"""

from __future__ import annotations

from typing import Dict, List, Optional
from urllib.parse import urlencode

from loguru import logger

from .encoder import CSRSubject
from .schemas import PKIParameters, RequestAction


def _dn_components(subject: CSRSubject) -> List[tuple[str, str]]:
    """按最具体到最一般的顺序返回非空 DN 组件。"""
    parts: List[tuple[str, str]] = []
    if subject.dn_common_name:
        parts.append(("CN", subject.dn_common_name))
    parts.extend(("OU", v) for v in subject.organizational_unit if v)
    parts.extend(("O", v) for v in subject.organization if v)
    parts.extend(("L", v) for v in subject.locality if v)
    parts.extend(("ST", v) for v in subject.province if v)
    parts.extend(("C", v) for v in subject.country if v)
    return parts


def build_subject_dn(subject: CSRSubject, dn_format: str = "comma") -> str:
    """
    拼接主题 DN。
    :param subject: CSR 主题。
    :param dn_format: "comma" 生成 CN=...,O=...,C=...；
                      "slash" 生成 /C=.../O=.../CN=...（旧版 PKI 格式）。
    :return: DN 字符串，没有任何组件时返回空串。
    """
    parts = _dn_components(subject)
    if dn_format == "slash":
        return "".join(f"/{key}={value}" for key, value in reversed(parts))
    return ",".join(f"{key}={value}" for key, value in parts)


def build_request_params(
    subject: CSRSubject,
    params: PKIParameters,
    action: Optional[RequestAction] = None,
    csr_pem: Optional[str] = None,
) -> Dict[str, str]:
    """
    生成有序的请求参数。
    :param subject: CSR 主题。
    :param params: 参数配置。
    :param action: 请求动作；为 None 时不输出任何动作参数。
    :param csr_pem: 配置了 getCSRParam 时随请求发送的 CSR。
    :return: 保持插入顺序的参数字典。
    """
    result: Dict[str, str] = {}

    if action == RequestAction.NEW and params.new_cert_param:
        result[params.new_cert_param] = params.new_cert_value
    elif action == RequestAction.RENEW and params.renew_cert_param:
        result[params.renew_cert_param] = params.renew_cert_value

    subject_dn = build_subject_dn(subject, params.subject_dn_format)
    if params.subject_param and subject_dn:
        result[params.subject_param] = subject_dn

    if params.dns_prefix and subject.dns_names:
        start = params.effective_dns_start_index
        cap = params.effective_dns_max_count
        dropped = len(subject.dns_names) - cap
        for offset, dns in enumerate(subject.dns_names[:cap]):
            result[f"{params.dns_prefix}{start + offset}"] = dns
        if dropped > 0:
            logger.warning(f"DNS SAN 数量超过上限 {cap}，已忽略 {dropped} 个")

    if params.csr_param and csr_pem:
        result[params.csr_param] = csr_pem

    if params.get_cert_param:
        result[params.get_cert_param] = ""

    return result


def serialize_params(params: Dict[str, str], param_format: str = "ampersand") -> str:
    """按配置格式序列化参数。"""
    if param_format == "semicolon":
        # 旧版格式: key=value;key2;key3=value3
        return ";".join(f"{key}={value}" if value else key for key, value in params.items())
    return urlencode(params)
