"""
Configuration for the batch image analysis service.
Covers the vision collaborator backend, upload limits, call policy and logging.
"""
import os
from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()

MIB = 1024 * 1024


class AnalyzerConfig(BaseSettings):
    """Service configuration, read from the environment (and .env)"""

    model_config = SettingsConfigDict(extra='ignore')

    # API Backend Selection: "openai" or "legacy"
    api_backend: str = "openai"

    # OpenAI-compatible chat completions (OpenAI, OpenRouter, gateways)
    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    openai_model: str = "gpt-4o"
    vision_detail: str = "high"
    vision_max_tokens: int = 1500
    # Full prompt override; empty means the built-in ticket/vehicle prompt
    vision_prompt: str = ""

    # Self-hosted endpoint taking form data (text prompt + image file)
    legacy_api_endpoint: str = ""
    legacy_api_key: str = ""

    # Collaborator call policy
    # Per HTTP attempt
    request_timeout: float = 90.0
    # Per image, retries included; a timed out image becomes an error outcome
    analysis_timeout: float = 180.0
    retry_attempts: int = 2
    retry_delay: float = 1.0
    # 0 keeps the fan-out unbounded
    max_concurrent_requests: int = Field(0, ge=0)

    # Upload limits
    max_file_size: int = Field(10 * MIB, gt=0)
    max_files: int = Field(20, gt=0)
    stream_chunk_size: int = Field(64 * 1024, gt=0)
    buffer_request_body: bool = False
    # Whole request body bound; derived from the per-file limits when unset
    max_upload_size: Optional[int] = None

    # Copy raw collaborator exception text into failed items' warnings
    expose_error_details: bool = False

    # Logging
    log_dir: str = "./logs"
    log_level: str = "INFO"
    enable_debug_logging: bool = False

    @property
    def max_content_length(self) -> int:
        """Request body limit handed to Flask (files plus multipart overhead)"""
        if self.max_upload_size:
            return self.max_upload_size
        return self.max_file_size * self.max_files + MIB

    @property
    def is_legacy_backend(self) -> bool:
        return self.api_backend == "legacy"

    def create_directories(self):
        """Create necessary directories"""
        os.makedirs(self.log_dir, exist_ok=True)

    def validate_configuration(self) -> List[str]:
        """Validate configuration and return warnings"""
        warnings = []

        if self.api_backend not in ("openai", "legacy"):
            warnings.append(
                f"Invalid API_BACKEND '{self.api_backend}' - must be 'openai' or 'legacy'")

        if self.api_backend == "openai" and not self.openai_api_key:
            warnings.append(
                "OPENAI_API_KEY not set - image analysis will fail")

        if self.is_legacy_backend and not self.legacy_api_endpoint:
            warnings.append(
                "LEGACY_API_ENDPOINT not set - image analysis will fail")

        if self.request_timeout <= 0 or self.analysis_timeout <= 0:
            warnings.append("REQUEST_TIMEOUT and ANALYSIS_TIMEOUT must be positive")

        if self.analysis_timeout < self.request_timeout:
            warnings.append(
                "ANALYSIS_TIMEOUT is shorter than REQUEST_TIMEOUT; retries will never run")

        if self.max_upload_size and self.max_upload_size < self.max_file_size:
            warnings.append(
                "MAX_UPLOAD_SIZE is smaller than MAX_FILE_SIZE; single uploads may be rejected")

        return warnings


# Global configuration instance
config = AnalyzerConfig()

# Validate configuration on import
if config.enable_debug_logging:
    warnings = config.validate_configuration()
    if warnings:
        import logging
        logger = logging.getLogger(__name__)
        for warning in warnings:
            logger.warning(f"Configuration warning: {warning}")
