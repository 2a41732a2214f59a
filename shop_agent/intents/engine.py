"""确定性意图引擎。

规则集只在进程启动时加载一次，之后只读，可被并发请求安全共享。

- classify(message): 关键词/正则匹配，优先级：
  defer 关键词 > business 意图 > conversational 意图 > 兜底 "inconnu"。
  命中 defer 表示问题属于商品/订单等领域，交给模型处理，规则引擎不得拦截。
- respond(intent, context): 按声明顺序选出第一条条件全部满足的模板，
  替换 {{name}} 占位符；无模板命中时返回共享的通用错误文案，type 为 "error"。

两者都是 (规则集, 输入) 的纯函数，无 I/O、无状态修改。
"""

import re
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Pattern, Tuple, Union

import yaml

from shop_agent.domain.exceptions import RuleSetLoadFailure


DEFER_INTENT = "defer"
FALLBACK_INTENT = "inconnu"
ERROR_TYPE = "error"
GENERIC_ERROR_PHRASE = "erreur_generique"
SUPPORT_CONTACT_PHRASE = "contact_support"
MISSING_PLACEHOLDER = "…"

INTENT_KINDS = ("business", "conversational")

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def compile_keyword(keyword: Any) -> Pattern[str]:
    """关键词按整词匹配："commande" 不会命中 "recommande"。"""

    return re.compile(r"(?<!\w)" + re.escape(str(keyword).lower()) + r"(?!\w)")


def as_text(value: Any) -> str:
    """条件比较与占位符替换共用的字符串化规则。"""

    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


@dataclass(frozen=True)
class ResponseTemplate:
    conditions: Mapping[str, str]
    text: str

    def matches(self, context: Mapping[str, Any]) -> bool:
        return all(name in context and as_text(context[name]) == literal for name, literal in self.conditions.items())


@dataclass(frozen=True)
class IntentRule:
    tag: str
    kind: str
    keywords: Tuple[Pattern[str], ...]
    patterns: Tuple[Pattern[str], ...]
    templates: Tuple[ResponseTemplate, ...]
    escalate: bool = False

    def matches(self, lowered: str) -> bool:
        if any(k.search(lowered) for k in self.keywords):
            return True
        return any(p.search(lowered) for p in self.patterns)


@dataclass(frozen=True)
class RuleSet:
    defer_keywords: Tuple[Pattern[str], ...]
    intents: Tuple[IntentRule, ...]
    phrases: Mapping[str, str]

    def rule(self, tag: str) -> Optional[IntentRule]:
        for r in self.intents:
            if r.tag == tag:
                return r
        return None


@dataclass(frozen=True)
class IntentResponse:
    text: str
    type: str


def _require(condition: bool, message: str, source: str) -> None:
    if not condition:
        raise RuleSetLoadFailure(code="RULESET_INVALID", message=message, http_status=500, source=source)


def parse_rule_set(data: Any, source: str = "<memory>") -> RuleSet:
    """校验并冻结规则集。任何缺失都视为致命错误，不允许带着残缺规则运行。"""

    _require(isinstance(data, dict), "rule set must be a mapping", source)
    phrases = data.get("phrases") or {}
    _require(isinstance(phrases, dict), "phrases must be a mapping", source)
    for key in (GENERIC_ERROR_PHRASE, SUPPORT_CONTACT_PHRASE):
        _require(bool(phrases.get(key)), f"phrase {key!r} is required", source)

    defer = data.get("defer_keywords") or []
    _require(isinstance(defer, list), "defer_keywords must be a list", source)

    raw_intents = data.get("intents") or {}
    _require(isinstance(raw_intents, dict) and bool(raw_intents), "intents must be a non-empty mapping", source)

    intents = []
    for tag, entry in raw_intents.items():
        _require(isinstance(entry, dict), f"intent {tag!r} must be a mapping", source)
        _require(tag not in (DEFER_INTENT, FALLBACK_INTENT), f"intent tag {tag!r} is reserved", source)
        kind = entry.get("kind", "business")
        _require(kind in INTENT_KINDS, f"intent {tag!r} has unknown kind {kind!r}", source)
        keywords = tuple(compile_keyword(k) for k in entry.get("keywords") or [])
        try:
            patterns = tuple(re.compile(p, re.IGNORECASE) for p in entry.get("patterns") or [])
        except re.error as exc:
            raise RuleSetLoadFailure(code="RULESET_INVALID", message=f"intent {tag!r}: {exc}", http_status=500, source=source)
        _require(bool(keywords or patterns), f"intent {tag!r} has no keywords or patterns", source)
        templates = []
        for item in entry.get("templates") or []:
            _require(isinstance(item, dict) and "text" in item, f"intent {tag!r} has a template without text", source)
            conditions = {str(k): as_text(v) for k, v in (item.get("when") or {}).items()}
            templates.append(ResponseTemplate(conditions=MappingProxyType(conditions), text=str(item["text"])))
        intents.append(
            IntentRule(
                tag=str(tag),
                kind=kind,
                keywords=keywords,
                patterns=patterns,
                templates=tuple(templates),
                escalate=bool(entry.get("escalate", False)),
            )
        )

    # business 先于 conversational；同类内部保持声明顺序
    ordered = sorted(intents, key=lambda r: INTENT_KINDS.index(r.kind))
    return RuleSet(
        defer_keywords=tuple(compile_keyword(k) for k in defer),
        intents=tuple(ordered),
        phrases=MappingProxyType({str(k): str(v) for k, v in phrases.items()}),
    )


def load_rule_set(path: Union[str, Path]) -> RuleSet:
    p = Path(path)
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise RuleSetLoadFailure(code="RULESET_LOAD_ERROR", message=str(exc), http_status=500, source=str(p))
    return parse_rule_set(data, source=str(p))


class IntentEngine:
    """对已加载规则集的只读封装。"""

    def __init__(self, rules: RuleSet):
        self._rules = rules

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "IntentEngine":
        return cls(load_rule_set(path))

    @property
    def rules(self) -> RuleSet:
        return self._rules

    @property
    def support_contact(self) -> str:
        return self._rules.phrases[SUPPORT_CONTACT_PHRASE]

    def classify(self, message: str) -> str:
        lowered = (message or "").lower()
        if any(k.search(lowered) for k in self._rules.defer_keywords):
            return DEFER_INTENT
        for rule in self._rules.intents:
            if rule.matches(lowered):
                return rule.tag
        return FALLBACK_INTENT

    def should_escalate(self, intent: str) -> bool:
        rule = self._rules.rule(intent)
        return bool(rule and rule.escalate)

    def respond(self, intent: str, context: Optional[Mapping[str, Any]] = None) -> IntentResponse:
        ctx = context or {}
        rule = self._rules.rule(intent)
        if rule is not None:
            for template in rule.templates:
                if template.matches(ctx):
                    return IntentResponse(text=self.render(template.text, ctx), type=intent)
        return IntentResponse(text=self._rules.phrases[GENERIC_ERROR_PHRASE], type=ERROR_TYPE)

    def render(self, text: str, context: Mapping[str, Any]) -> str:
        def _sub(match: "re.Match[str]") -> str:
            name = match.group(1)
            if name in context and context[name] is not None:
                return as_text(context[name])
            if name in self._rules.phrases:
                return self._rules.phrases[name]
            return MISSING_PLACEHOLDER

        return _PLACEHOLDER.sub(_sub, text)


def merge_context(*layers: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for layer in layers:
        if layer:
            merged.update(layer)
    return merged
