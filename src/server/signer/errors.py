"""
签发器错误类型。

每个异常都带有 reason 字段，控制器直接将其写入 Ready 条件的 reason。
输入类错误继承 ValueError，远端/运行时错误继承 RuntimeError，便于路由层按
ValueError -> 400、RuntimeError -> 500 统一映射。
"""

from __future__ import annotations


class SignerError(Exception):
    """签发流程中的基础错误。"""

    reason = "SignerError"


class InvalidCSRError(SignerError, ValueError):
    """CSR 格式错误或无法解析。"""

    reason = "InvalidCSR"


class InvalidSignatureError(InvalidCSRError):
    """CSR 自签名校验失败。"""

    reason = "InvalidSignature"


class ConfigError(SignerError, ValueError):
    """签发器配置缺失或无法解析。"""

    reason = "ConfigError"


class AuthError(SignerError, ValueError):
    """认证凭据缺失或无效。"""

    reason = "AuthError"


class HealthCheckFailed(SignerError, RuntimeError):
    """远端 CA 不可达或返回 5xx。"""

    reason = "HealthCheckFailed"


class SigningFailed(SignerError, RuntimeError):
    """远端 CA 拒绝请求或返回了无法解析的响应。"""

    reason = "SigningFailed"


class NoCertificateInResponse(SigningFailed):
    """响应中没有任何 CERTIFICATE 块。"""


class MissingResponseField(SigningFailed):
    """JSON 响应缺少声明的字段。"""

    def __init__(self, field: str):
        super().__init__(f"响应中缺少字段: {field}")
        self.field = field


class CAInitializationError(SignerError, RuntimeError):
    """Mock CA 密钥或根证书生成失败。"""

    reason = "CAInitFailed"
