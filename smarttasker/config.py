from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  app_env: str = "development"  # development | test | production
  database_url: str = "postgresql+asyncpg://smarttasker:smarttasker@db:5432/smarttasker"
  app_secret: str = "dev-secret-change-me"
  app_version: str = "v2026-10-19"
  build_sha: str = "dev"
  app_base_url: str = "http://localhost:5173"
  api_docs_enabled: bool = True
  log_level: str = "INFO"

  cookie_secure: bool = False
  cookie_domain: str | None = None

  rate_limit_login_ip_per_minute: int = 60
  rate_limit_login_email_per_minute: int = 20

  cors_origins: str = "http://localhost:5173,http://localhost:8080"
  cors_origin_regex: str = r"^http://(localhost|127\.0\.0\.1):(5173|8080)$"
  trusted_hosts: str = "localhost,127.0.0.1,0.0.0.0,api,web,test"
  redis_url: str | None = None

  email_host: str = "smtp.example.com"
  email_port: int = 587
  email_starttls: bool = True
  email_user: str = ""
  email_password: str = ""
  email_from: str = "noreply@smarttasker.com"
  email_disabled: bool = False
  email_send_in_development: bool = False
  email_retry_interval_seconds: int = 60
  email_retry_delay_seconds: int = 300
  email_max_retry_attempts: int = 3

  ai_provider: str = "local"  # local | groq
  groq_api_key: str | None = None
  groq_api_url: str = "https://api.groq.com/openai/v1"
  groq_model: str = "llama3-8b-8192"
  groq_max_tokens: int = 4096
  groq_temperature: float = 0.7
  groq_top_p: float = 0.9
  groq_retries: int = 3
  groq_retry_delay_ms: int = 1000
  groq_timeout_ms: int = 60000
  groq_system_prompt: str = "You are SmartTasker AI, an intelligent assistant for task management."
  chat_rate_limit_per_minute: int = 20

  due_monitor_enabled: bool = True
  due_monitor_interval_seconds: int = 15 * 60

  @property
  def is_production(self) -> bool:
    return self.app_env.strip().lower() == "production"

  def cors_origin_list(self) -> list[str]:
    return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

  def trusted_host_list(self) -> list[str]:
    return [h.strip() for h in self.trusted_hosts.split(",") if h.strip()]


settings = Settings()
