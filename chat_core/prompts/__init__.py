"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取 ``<name>_system.md``。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


def load_system_prompt(name: str, locale: str = "en") -> str:
    """根据用途和语言加载系统提示词文本，例如 name="title"。"""

    fname = PROMPTS_DIR / locale / f"{name}_system.md"
    return fname.read_text(encoding="utf-8").strip()
