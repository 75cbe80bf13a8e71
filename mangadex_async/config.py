import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


@dataclass
class Config:
    api_base: str = "https://api.mangadex.org"
    user_agent: str = "mangadex-async/0.1.0"
    request_timeout: float = 30.0
    max_connections: int = 16

    # MangaDex allows roughly 5 requests per second per client
    rate_limit_calls: int = 5
    rate_limit_window: float = 1.0
    blocking: bool = True

    refresh_margin: float = 60.0
    session_lifetime: float = 15 * 60

    output_dir: Path = Path("downloads")
    max_concurrent_chapters: int = 2
    max_concurrent_images: int = 6
    image_retries: int = 5
    data_saver: bool = False
    force_port443: bool = False
    cleanup_temp: bool = True
    language: str = "en"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        env = os.environ if environ is None else environ
        cfg = cls()
        if env.get("MANGADEX_API_BASE"):
            cfg.api_base = env["MANGADEX_API_BASE"]
        if env.get("MANGADEX_RATE_LIMIT"):
            cfg.rate_limit_calls = int(env["MANGADEX_RATE_LIMIT"])
        if env.get("MANGADEX_RATE_WINDOW"):
            cfg.rate_limit_window = float(env["MANGADEX_RATE_WINDOW"])
        if env.get("MANGADEX_NON_BLOCKING"):
            cfg.blocking = env["MANGADEX_NON_BLOCKING"].lower() not in ("1", "true", "yes")
        if env.get("MANGADEX_OUTPUT_DIR"):
            cfg.output_dir = Path(env["MANGADEX_OUTPUT_DIR"])
        if env.get("MANGADEX_LANGUAGE"):
            cfg.language = env["MANGADEX_LANGUAGE"]
        return cfg
