from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenAI Responses API
    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_project: str = ""
    default_model: str = "gpt-5-mini"
    deep_model: str = "gpt-5"
    plan_model: str = "gpt-5-mini"
    utility_model: str = "gpt-5-mini"  # subject resolution, summaries

    # Supabase
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_service_role_key: str = ""
    manage_accounts_path: str = "/functions/v1/manage-accounts"
    initial_credits: int = 1000

    # Deadline / cancellation
    streaming_deadline_seconds: float = 280.0
    streaming_deadline_ceiling_seconds: float = 295.0
    upstream_close_grace_seconds: float = 2.0

    # Keep-alive heartbeat
    keepalive_initial_seconds: float = 2.0
    keepalive_backoff_factor: float = 2.0
    keepalive_max_seconds: float = 10.0

    # Reasoning streaming
    quick_reasoning_flush_seconds: float = 0.8
    quick_reasoning_tail_chars: int = 200

    # Secondary subscriptions
    fast_plan_enabled: bool = True
    fast_plan_wait_seconds: float = 5.0
    subject_resolution_timeout_seconds: float = 15.0
    tool_timeout_seconds: float = 30.0

    # Intent heuristics
    bare_name_max_words: int = 2
    short_message_max_words: int = 4
    short_question_max_chars: int = 120
    small_talk_terms: str = ""  # comma-separated, extends the built-in greetings

    # Output shaping
    web_search_max_sources: int = 5
    max_output_tokens_fast: int = 500
    max_output_tokens_quick: int = 450
    recent_context_turns: int = 4
    fast_recent_context_turns: int = 2

    # Accounting
    charge_incomplete_sessions: bool = False
    rolling_summary_enabled: bool = True

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    cli_user_id: str = "local-cli"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]

    @property
    def small_talk_term_list(self) -> list[str]:
        return [t.strip() for t in self.small_talk_terms.split(",") if t.strip()]

    @property
    def manage_accounts_url(self) -> str:
        return f"{self.supabase_url.rstrip('/')}{self.manage_accounts_path}"


settings = Settings()
