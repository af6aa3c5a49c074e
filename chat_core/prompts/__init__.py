"""医生人设提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取 <persona>.md，
作为健康对话的 system prompt。
"""

from pathlib import Path
from typing import List

from chat_core.domain.exceptions import ValidationError

PROMPTS_DIR = Path(__file__).resolve().parent
DEFAULT_PERSONA = "family_medicine"


def list_personas(locale: str = "en") -> List[str]:
    return sorted(p.stem for p in (PROMPTS_DIR / locale).glob("*.md"))


def load_persona_prompt(persona: str = DEFAULT_PERSONA, locale: str = "en") -> str:
    """根据人设名称加载系统提示词文本，名称不区分大小写，空格与连字符视同下划线。"""

    key = persona.strip().lower().replace(" ", "_").replace("-", "_")
    fname = PROMPTS_DIR / locale / f"{key}.md"
    if not fname.exists():
        raise ValidationError(
            code="UNKNOWN_PERSONA",
            message=f"Unknown persona {persona!r}; available: {', '.join(list_personas(locale))}",
        )
    return fname.read_text(encoding="utf-8").strip()
