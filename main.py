"""
Compliance Process Engine API 主入口
"""
import logging
import uvicorn

from process_engine.config import EngineSettings


settings = EngineSettings.from_env()

# 配置日志
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


if __name__ == "__main__":
    if settings.api_reload:
        # 开发模式
        uvicorn.run(
            "process_engine.api.app:create_app",
            factory=True,
            host=settings.api_host,
            port=settings.api_port,
            reload=True,
            log_level="info"
        )
    else:
        from process_engine.api import create_app

        uvicorn.run(
            create_app(settings=settings),
            host=settings.api_host,
            port=settings.api_port,
            log_level="info"
        )
