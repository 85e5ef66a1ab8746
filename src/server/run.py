#!/usr/bin/env python
import os
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv
from loguru import logger


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """重置 loguru 输出到 stdout；fmt 为 json 时输出结构化日志。"""
    logger.remove()
    logger.add(sys.stdout, level=level.upper(), serialize=(fmt.lower() == "json"))


if __name__ == "__main__":
    load_dotenv(Path.cwd() / ".env")

    from src.server.config import config

    configure_logging(config.mockca_log_level, config.mockca_log_format)
    logger.info("External Issuer Mock CA, start running!")
    logger.info(f"当前应用环境：{os.getenv('APP_ENV')}")

    uvicorn.run(
        "src.server.main:app",
        host=config.mockca_host,
        port=config.mockca_port,
        log_level=config.mockca_log_level.lower(),
        timeout_keep_alive=60,
    )
