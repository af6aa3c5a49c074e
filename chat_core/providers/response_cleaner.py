"""本地模型回复清洗。

本地运行时直接吐出原始 token 流，常带有聊天模板的特殊标记、
阶段标签或 HTML 实体，需要在落盘前清理。
"""

import html
import re
import unicodedata

SPECIAL_TOKENS = (
    "<|eot_id|>",
    "<|end_of_text|>",
    "<|start_header_id|>",
    "<|end_header_id|>",
    "<|begin_of_text|>",
    "<|im_start|>",
    "<|im_end|>",
    "<|end|>",
    "<|system|>",
    "<|user|>",
    "<|assistant|>",
    "<s>",
    "</s>",
    "[INST]",
    "[/INST]",
    "<<SYS>>",
    "<</SYS>>",
)

UNWANTED_PREFIXES = (
    "Empathy Phase:",
    "Solution Phase:",
    "Information Gathering Phase:",
    "Response:",
    "Assistant:",
    "System:",
    "Context:",
)

_MULTI_SPACE = re.compile(r" {2,}")
_MULTI_NEWLINE = re.compile(r"\n{3,}")


def remove_special_tokens(text: str) -> str:
    for token in SPECIAL_TOKENS:
        text = text.replace(token, "")
    return text


def remove_unwanted_prefixes(text: str) -> str:
    """行首标签后有实质内容（多于 3 个字符）时保留内容，否则整行删除。"""
    out = []
    for line in text.split("\n"):
        for prefix in UNWANTED_PREFIXES:
            if line.startswith(prefix):
                rest = line[len(prefix):].strip()
                line = rest if len(rest) > 3 else None
                break
        if line is not None:
            out.append(line)
    return "\n".join(out)


def normalize_whitespace(text: str) -> str:
    text = _MULTI_NEWLINE.sub("\n\n", text)
    return "\n".join(_MULTI_SPACE.sub(" ", line) for line in text.split("\n"))


def clean_response(text: str) -> str:
    if not text:
        return ""
    cleaned = html.unescape(unicodedata.normalize("NFC", text))
    cleaned = remove_special_tokens(cleaned)
    cleaned = remove_unwanted_prefixes(cleaned)
    cleaned = normalize_whitespace(cleaned)
    return cleaned.strip()
