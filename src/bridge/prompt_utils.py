from __future__ import annotations

from pathlib import Path

import structlog

from src.bridge.config import BridgeConfig

logger = structlog.get_logger(__name__)

_DEFAULT_MAX_PROMPT_CHARS = 40_000


def _default_instructions(config: BridgeConfig) -> str:
    return (
        f"You are {config.agent_name}, a voice assistant on a phone call. "
        "Speak only English. Be concise: one short sentence, then at most one brief follow-up question. "
        "Speak to the caller directly; never narrate or analyse what they said. "
        "Stay on the caller's request and do not make unsolicited suggestions. "
        "If the request is unclear or may have been misheard, ask one short clarifying question. "
        "Never repeat the same sentence twice in a row. "
        "Never address the caller by your own name."
    )


def _repo_root() -> Path:
    # src/bridge/prompt_utils.py -> repo root is ../../
    return Path(__file__).resolve().parents[2]


def _read_text_file(path: str, *, max_chars: int) -> str:
    if not path:
        return ""

    file_path = Path(path)
    if not file_path.is_absolute():
        file_path = _repo_root() / file_path

    try:
        content = file_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("Prompt file not found", path=str(file_path))
        return ""
    except UnicodeDecodeError:
        try:
            content = file_path.read_text(encoding="utf-8-sig")
        except (OSError, UnicodeDecodeError):
            logger.warning("Prompt file decode failed", path=str(file_path))
            return ""
    except OSError:
        logger.exception("Prompt file read failed", path=str(file_path))
        return ""

    content = content.strip()
    if not content:
        return ""

    if len(content) > max_chars:
        logger.warning("Prompt truncated (too long)", path=str(file_path), max_chars=max_chars)
        content = content[:max_chars]

    return content


def apply_placeholders(text: str, config: BridgeConfig) -> str:
    if not text:
        return ""

    replacements = {
        "{AGENT_NAME}": config.agent_name,
        "{agent_name}": config.agent_name,
    }
    for key, value in replacements.items():
        text = text.replace(key, value)

    return text


def resolve_instructions(
    config: BridgeConfig,
    *,
    max_chars: int = _DEFAULT_MAX_PROMPT_CHARS,
) -> str:
    """
    Resolve persona instructions from (1) inline text, else (2) file path, else the
    built-in default.

    - Applies simple placeholder substitution.
    - Truncates large prompts for safety.
    """
    prompt = (config.persona_instructions or "").strip()
    if not prompt:
        prompt = _read_text_file(config.persona_instructions_file, max_chars=max_chars)
    if not prompt:
        prompt = _default_instructions(config)

    return apply_placeholders(prompt, config)


def greeting_instructions(config: BridgeConfig) -> str:
    """Instruction for the opening turn, or "" when the greeting is disabled."""
    if not config.greeting_enabled:
        return ""
    text = apply_placeholders((config.greeting_text or "").strip(), config)
    if not text:
        return ""
    return f"Greet the caller by saying exactly: \"{text}\""
