"""确定性意图引擎与账户状态查询。"""

from shop_agent.intents.engine import (
    DEFER_INTENT,
    ERROR_TYPE,
    FALLBACK_INTENT,
    IntentEngine,
    IntentResponse,
    RuleSet,
    load_rule_set,
)

__all__ = [
    "DEFER_INTENT",
    "ERROR_TYPE",
    "FALLBACK_INTENT",
    "IntentEngine",
    "IntentResponse",
    "RuleSet",
    "load_rule_set",
]
