"""系统提示词加载与对话策略选择。

prompt_type 决定两件事：
- 使用哪份系统提示词（prompts/<locale>/*.md）。
- 走哪种策略：确定性规则引擎，还是模型 + 工具循环（Strategy 枚举）。
"""

from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional


PROMPTS_DIR = Path(__file__).resolve().parent

STANDARD_PROMPT = "standardAssistant"
VADF_PROMPT = "vadfAssistant"

_PROMPT_FILES: Dict[str, str] = {
    STANDARD_PROMPT: "standard_assistant.md",
    VADF_PROMPT: "vadf_assistant.md",
}


class Strategy(str, Enum):
    DETERMINISTIC = "deterministic"
    MODEL = "model"


def resolve_strategy(prompt_type: Optional[str]) -> Strategy:
    """每个请求只解析一次；只有 vadfAssistant 走确定性路径。"""

    if prompt_type == VADF_PROMPT:
        return Strategy.DETERMINISTIC
    return Strategy.MODEL


def load_system_prompt(prompt_type: Optional[str], locale: str = "fr") -> str:
    """根据 prompt_type 加载系统提示词文本，未知类型回退到 standardAssistant。"""

    fname = _PROMPT_FILES.get(prompt_type or "", _PROMPT_FILES[STANDARD_PROMPT])
    return (PROMPTS_DIR / locale / fname).read_text(encoding="utf-8")


def build_system_messages(prompt_type: Optional[str], current_page_url: Optional[str] = None) -> List[str]:
    system = [load_system_prompt(prompt_type)]
    if current_page_url:
        system.append(
            "Le client consulte actuellement la page suivante : "
            f"{current_page_url}. Si un outil de détails de page est disponible, utilise-le pour récupérer "
            "le titre, la description et les métadonnées utiles ; si la page n'est pas accessible, continue sans."
        )
    return system
