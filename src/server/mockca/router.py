"""
Mock CA 的 FastAPI 路由定义。
"""

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from loguru import logger

from . import services
from .core import VERSION, CertificateNotFound
from .schemas import ErrorResponse, HealthResponse, SignResponse
from src.server.signer.errors import InvalidCSRError, InvalidSignatureError, SignerError

router = APIRouter(tags=["Mock CA"])

PEM_MEDIA_TYPE = "application/x-pem-file"

INDEX_TEXT = f"""Mock CA Server v{VERSION}

Endpoints:
  GET  /health                  - Health check
  GET  /ca                      - Get CA certificate (PEM)
  POST /sign                    - Sign a CSR (JSON)
  POST /api/v1/sign             - Sign a CSR (JSON alternate)
  POST /api/v1/certificate/sign - Sign a CSR (JSON alternate)

Legacy PKI-Compatible Endpoint:
  POST /cgi/pki.cgi             - Legacy PKI API format

  POST arguments (semicolon-separated):
    getCERT     Return existing certificate
    getKEY      Return existing certificate key
    getCSR      Return existing CSR
    new=1       Create new certificate or return existing
    renew=1     Force recreation of certificate
    subject     Full DN (e.g., /C=US/ST=California/L=San Francisco/O=Example/CN=example.com)
    DNS2-DNS20  Subject Alternative Names

  Example:
    curl -s -X POST -d 'new=1;subject=/C=US/O=Example/CN=test.com;DNS2=test2.com' http://mockca:8080/cgi/pki.cgi
"""


def _error(status_code: int, code: str, message: str, details: str = "") -> JSONResponse:
    logger.warning(f"返回错误响应: status={status_code}, code={code}, message={message}")
    body = ErrorResponse(error=message, code=code, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@router.get("/", response_class=PlainTextResponse)
async def index() -> str:
    return INDEX_TEXT


@router.get("/health", response_model=HealthResponse)
@router.get("/healthz", response_model=HealthResponse)
@router.get("/readyz", response_model=HealthResponse)
async def health() -> HealthResponse:
    """
    健康检查，返回 CA 主题、过期时间与已签发数量。
    """
    try:
        return services.health_service()
    except SignerError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/ca")
async def get_ca() -> Response:
    """
    下载 CA 证书。
    """
    return Response(
        content=services.ca_certificate_service(),
        media_type=PEM_MEDIA_TYPE,
        headers={"Content-Disposition": "attachment; filename=ca.crt"},
    )


@router.post("/sign", response_model=SignResponse)
@router.post("/api/v1/sign", response_model=SignResponse)
@router.post("/api/v1/certificate/sign", response_model=SignResponse)
async def sign(request: Request):
    """
    签发 CSR。请求体可以是 JSON {csr, validity_days}、表单或原始 PEM。
    """
    body = await request.body()
    try:
        req = services.parse_sign_request(body, request.headers.get("content-type", ""))
        return services.sign_service(req)
    except services.SignRequestError as e:
        return _error(400, e.code, str(e), e.details)
    except InvalidSignatureError as e:
        return _error(400, "INVALID_SIGNATURE", "CSR signature validation failed", str(e))
    except InvalidCSRError as e:
        return _error(400, "INVALID_CSR", "Failed to parse CSR", str(e))
    except SignerError as e:
        return _error(500, "SIGNING_ERROR", "Failed to create certificate", str(e))


@router.post("/cgi/pki.cgi")
async def legacy_pki(request: Request) -> Response:
    """
    旧版 PKI 兼容接口：分号分隔参数，返回原始 PEM。
    """
    body = await request.body()
    try:
        content = services.legacy_service(body)
    except CertificateNotFound as e:
        return PlainTextResponse(str(e), status_code=404)
    except ValueError as e:
        return PlainTextResponse(str(e), status_code=400)
    except RuntimeError as e:
        logger.error(f"旧版接口签发失败: {e}")
        return PlainTextResponse(f"证书签发失败: {e}", status_code=500)
    return Response(content=content, media_type=PEM_MEDIA_TYPE)
