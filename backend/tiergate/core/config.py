"""
tiergate 配置

环境变量与 ../.env 读取；等级目录（tier_catalog.json）不在这里，见 core/tiers.py。
非 local 环境下密钥不允许保留 "changethis"。
"""
import secrets
import warnings
from typing import Annotated, Any, Literal

from pydantic import (
    AnyUrl,
    BeforeValidator,
    HttpUrl,
    PostgresDsn,
    computed_field,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self

def parse_cors(v: Any) -> list[str] | str:
    # "a,b" 形式转列表，JSON 列表原样交给 pydantic
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)

class Settings(BaseSettings):
    """环境变量优先于 .env，二者都缺失时用默认值"""

    model_config = SettingsConfigDict(
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )
    API_V1_STR: str = "/api/v1"
    # 身份服务签发的 Bearer token 使用 HS256，与这里的密钥一致
    SECRET_KEY: str = secrets.token_urlsafe(32)
    ACCESS_TOKEN_EXPIRE_DAYS: int = 7
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        """所有 CORS 允许的源（去除尾部斜杠）"""
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    PROJECT_NAME: str
    SENTRY_DSN: HttpUrl | None = None

    POSTGRES_SERVER: str
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = ""
    # 所有存储调用都必须有上限
    DB_STATEMENT_TIMEOUT_MS: int = 5000
    DB_POOL_TIMEOUT_SECONDS: int = 10

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> PostgresDsn:
        return PostgresDsn.build(
            scheme="postgresql+psycopg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )

    # Redis（会话级有效等级缓存 + 定时任务锁）
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 2.0
    TIER_CACHE_TTL_SECONDS: int = 60

    # Square 支付配置
    SQUARE_WEBHOOK_SIGNATURE_KEY: str | None = None  # Webhook HMAC 签名密钥
    SQUARE_ACCESS_TOKEN: str | None = None  # 订单/支付查询 API token
    SQUARE_ENVIRONMENT: Literal["production", "sandbox"] = "production"
    SQUARE_API_VERSION: str = "2023-10-18"
    SQUARE_TIMEOUT_SECONDS: float = 10.0

    # 定时任务触发密钥（可选）
    CRON_SECRET: str | None = None

    # 邮件通知（Resend）
    RESEND_API_KEY: str | None = None
    EMAILS_FROM_EMAIL: str = "noreply@elitesolutionsnetwork.com"
    NOTIFY_TIMEOUT_SECONDS: float = 10.0
    SITE_BASE_URL: str = "https://invest.elitesolutionsnetwork.com"
    SUPPORT_EMAIL: str = "support@elitesolutionsnetwork.com"

    # 首个管理员（由 initial_data 写入 profile，不做任何邮箱硬编码判断）
    FIRST_ADMIN_USER_ID: str | None = None
    FIRST_ADMIN_EMAIL: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def square_api_base_url(self) -> str:
        if self.SQUARE_ENVIRONMENT == "sandbox":
            return "https://connect.squareupsandbox.com"
        return "https://connect.squareup.com"

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("SECRET_KEY", self.SECRET_KEY)
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        self._check_default_secret(
            "SQUARE_WEBHOOK_SIGNATURE_KEY", self.SQUARE_WEBHOOK_SIGNATURE_KEY
        )
        self._check_default_secret("CRON_SECRET", self.CRON_SECRET)

        return self


settings = Settings()  # type: ignore
