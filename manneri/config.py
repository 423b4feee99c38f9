"""Configuration helpers."""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from dotenv import load_dotenv
from pydantic import ValidationError

from .models import ManneriConfig

load_dotenv()

# OpenRouter API key
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")

# OpenRouter API endpoint
OPENROUTER_API_URL = os.getenv("OPENROUTER_API_URL", "https://openrouter.ai/api/v1/chat/completions")

# AIプロンプト生成で使うモデル: OpenRouter形式 (https://openrouter.ai/models)
DEFAULT_AI_PROMPT_MODEL = "openai/gpt-5-mini"

# 環境変数による既定値の上書き
MANNERI_LANGUAGE = os.getenv("MANNERI_LANGUAGE")
MANNERI_DEBUG = os.getenv("MANNERI_DEBUG", "").lower() in ("1", "true", "yes", "on")

DEFAULT_CONFIG: Dict[str, Any] = ManneriConfig().model_dump()


class ConfigError(ValueError):
    """設定が不正"""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("Invalid manneri config: " + "; ".join(errors))


@dataclass
class ConfigValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    config: Optional[ManneriConfig] = None


def format_validation_errors(error: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in e['loc']) or 'config'}: {e['msg']}"
        for e in error.errors()
    ]


def validate_config(data: Any) -> ConfigValidationResult:
    """設定データを検証（例外は投げない）"""
    if isinstance(data, ManneriConfig):
        return ConfigValidationResult(valid=True, config=data)
    if not isinstance(data, Mapping):
        return ConfigValidationResult(
            valid=False,
            errors=[f"config: expected a mapping, got {type(data).__name__}"],
        )

    try:
        config = ManneriConfig.model_validate(dict(data))
    except ValidationError as e:
        return ConfigValidationResult(valid=False, errors=format_validation_errors(e))
    return ConfigValidationResult(valid=True, config=config)


def is_valid_config(data: Any) -> bool:
    return validate_config(data).valid


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if MANNERI_LANGUAGE:
        overrides["language"] = MANNERI_LANGUAGE
    if MANNERI_DEBUG:
        overrides["debug_mode"] = True
    return overrides


def load_config(data: Union[ManneriConfig, Mapping[str, Any], None] = None) -> ManneriConfig:
    """
    既定値 → 環境変数 → 指定値の順にマージして設定を作る

    Raises:
        ConfigError: 設定が不正な場合
    """
    if isinstance(data, ManneriConfig):
        return data
    if data is not None and not isinstance(data, Mapping):
        raise ConfigError([f"config: expected a mapping, got {type(data).__name__}"])

    merged = {**DEFAULT_CONFIG, **_env_overrides(), **(data or {})}
    result = validate_config(merged)
    if not result.valid:
        raise ConfigError(result.errors)
    return result.config
