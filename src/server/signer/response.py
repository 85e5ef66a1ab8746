"""
文件功能：
    解析 PKI 接口的响应，得到叶子证书与 CA 证书链。

公开接口：
    - split_pem_certificates: 按出现顺序切分 CERTIFICATE 块
    - extract_leaf_and_chain: 第一个块为叶子证书，其余按顺序拼接为证书链
    - decode_response: 将 json / base64 响应解码为 PEM 字节流
    - parse_response: decode_response + extract_leaf_and_chain

内部方法：
    - _lookup_field: 按 "a.b.c" 路径读取 JSON 字段
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, List, Tuple

from .errors import MissingResponseField, NoCertificateInResponse, SigningFailed
from .schemas import PKIResponse

PEM_BEGIN = b"-----BEGIN CERTIFICATE-----"
PEM_END = b"-----END CERTIFICATE-----"


def split_pem_certificates(data: bytes) -> List[bytes]:
    """从左到右扫描字节流，返回所有完整的 CERTIFICATE 块（含首尾分隔行）。"""
    blocks: List[bytes] = []
    pos = 0
    while True:
        start = data.find(PEM_BEGIN, pos)
        if start == -1:
            break
        end = data.find(PEM_END, start)
        if end == -1:
            break
        end += len(PEM_END)
        blocks.append(data[start:end])
        pos = end
    return blocks


def extract_leaf_and_chain(data: bytes) -> Tuple[bytes, bytes]:
    """
    从 PEM 字节流中提取叶子证书与 CA 证书链。
    :param data: PEM 字节流，块之间可以夹杂任意文本。
    :return: (叶子证书 PEM, CA 证书链 PEM)；没有 CA 时证书链为空字节串。
    :raises NoCertificateInResponse: 字节流中没有任何证书块。
    """
    blocks = split_pem_certificates(data)
    if not blocks:
        raise NoCertificateInResponse("响应中没有证书")
    leaf = blocks[0] + b"\n"
    chain = b"".join(block + b"\n" for block in blocks[1:])
    return leaf, chain


def _lookup_field(document: Any, path: str) -> Any:
    value = document
    for key in path.split("."):
        if not isinstance(value, dict) or key not in value:
            raise MissingResponseField(path)
        value = value[key]
    if value is None:
        raise MissingResponseField(path)
    return value


def decode_response(body: bytes, response: PKIResponse) -> bytes:
    """
    将响应按声明的格式解码为 PEM 字节流。
    :raises MissingResponseField: JSON 中缺少声明的字段。
    :raises SigningFailed: 响应无法按声明格式解码。
    """
    if response.format == "json":
        try:
            document = json.loads(body)
        except ValueError as e:
            raise SigningFailed(f"响应不是有效的 JSON: {e}") from e
        certificate_field = response.certificate_field or "certificate"
        parts = [str(_lookup_field(document, certificate_field))]
        if response.chain_field:
            parts.append(str(_lookup_field(document, response.chain_field)))
        return "\n".join(parts).encode("utf-8")

    if response.format == "base64":
        try:
            return base64.b64decode(b"".join(body.split()), validate=True)
        except (binascii.Error, ValueError) as e:
            raise SigningFailed(f"响应不是有效的 Base64: {e}") from e

    return body


def parse_response(body: bytes, response: PKIResponse) -> Tuple[bytes, bytes]:
    """解码响应并提取 (叶子证书, CA 证书链)。"""
    return extract_leaf_and_chain(decode_response(body, response))
