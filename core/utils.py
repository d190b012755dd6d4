import json
import os
import re
from datetime import date
from typing import Any, Dict, Optional

from core.exceptions import ValidationError
from core.logger import get_logger
from core.paths import CONFIG_DIR

# Prompt 模板目录
PROMPTS_DIR = CONFIG_DIR / "prompts"

logger = get_logger("utils")

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def load_prompt(name: str, variables: Optional[Dict[str, Any]] = None) -> str:
    """
    加载 Prompt 模板文件，支持子目录和变量注入。

    Args:
        name: Prompt 名称，支持子目录 (如 "coach/daily_tasks")
        variables: 变量字典，用于替换 {var} 占位符

    Returns:
        渲染后的 Prompt 字符串；模板不存在时返回空字符串
    """
    prompt_path = PROMPTS_DIR / f"{name.replace('/', os.sep)}.md"

    if not prompt_path.exists():
        logger.debug(f"Prompt '{name}' not found at {prompt_path}")
        return ""

    template = prompt_path.read_text(encoding="utf-8")

    if variables:
        for key, value in variables.items():
            template = template.replace(f"{{{key}}}", str(value))

    return template


def parse_llm_json(content: str) -> Optional[Any]:
    """
    解析 LLM 返回的 JSON 内容。

    LLM 经常将 JSON 包裹在 Markdown 代码块中或前后附带说明文字，
    此函数依次尝试代码块、原文、首尾花括号之间的片段。

    Returns:
        解析后的对象，解析失败返回 None

    示例:
        >>> parse_llm_json('```json\\n{"key": "value"}\\n```')
        {'key': 'value'}
    """
    if not content:
        return None

    if "```json" in content:
        content = content.split("```json")[1].split("```")[0]
    elif "```" in content:
        content = content.split("```")[1].split("```")[0]

    try:
        return json.loads(content.strip())
    except json.JSONDecodeError:
        pass

    start, end = content.find("{"), content.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(content[start:end + 1])
        except json.JSONDecodeError:
            return None
    return None


def parse_iso_date(value: Any, field: str) -> date:
    """YYYY-MM-DD 字符串或 date -> date，格式错误抛 ValidationError。"""
    if isinstance(value, date):
        return value
    raw = str(value or "").strip()
    if not _DATE_RE.match(raw):
        raise ValidationError(f"{field} must be in YYYY-MM-DD format", field=field)
    try:
        return date.fromisoformat(raw)
    except ValueError as e:
        raise ValidationError(f"{field} is not a valid date: {raw}", field=field) from e
