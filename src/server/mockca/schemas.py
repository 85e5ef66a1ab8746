"""
Mock CA HTTP 接口的数据模型定义。
"""

from typing import Optional

from pydantic import BaseModel


class SignRequest(BaseModel):
    """
    JSON 签发请求。
    """
    csr: str = ""
    validity_days: Optional[int] = None
    common_name: Optional[str] = None


class SignResponse(BaseModel):
    """
    签发结果。certificate_chain 为叶子证书 + CA 证书。
    """
    certificate: str
    certificate_chain: str
    ca: str
    serial_number: str
    not_before: str
    not_after: str
    subject: str


class ErrorResponse(BaseModel):
    error: str
    code: str
    details: str = ""


class HealthResponse(BaseModel):
    status: str
    version: str
    ca_subject: str
    ca_expires: str
    certificates_signed: int
    uptime: str
