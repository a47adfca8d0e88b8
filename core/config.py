"""
配置文件 - 项目配置管理
"""
import json
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisSettings(BaseModel):
    # 未配置 url 时使用进程内幂等存储
    url: Optional[str] = None
    max_connections: int = 10
    namespace: str = "gateway-ledger"
    # 已完成操作结果的保留时长（秒）
    idempotency_ttl: int = 24 * 3600
    # 进行中标记的过期时长（秒），防止进程崩溃后永久占用
    in_flight_ttl: int = 60


class DatabaseSettings(BaseModel):
    url: str = "sqlite+aiosqlite:///./ledger.db"
    echo: bool = False
    # False 时使用内存仓储（测试/演示）
    enabled: bool = True


class Settings(BaseSettings):
    """项目配置"""

    # 基础配置
    PROJECT_NAME: str = Field(default="Gateway Ledger")
    VERSION: str = Field(default="1.0.0")
    DEBUG: bool = Field(default=True)
    ENVIRONMENT: str = Field(default="development")

    # 分组配置：Redis/Database 采用嵌套模型
    redis: RedisSettings = Field(default_factory=RedisSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)

    # CORS配置
    CORS_ORIGINS: list = Field(default=["http://localhost:3000", "http://localhost:8000"])

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        """允许 JSON 字符串或逗号分隔字符串两种格式。"""
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("[") and s.endswith("]"):
                arr = json.loads(s)
                if isinstance(arr, list):
                    return arr
            return [item.strip() for item in s.split(",") if item.strip()]
        return v


settings = Settings()
