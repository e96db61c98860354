"""
话题推断

调用方未提供分类/话题时，按固定的关键词规则从用户消息推断。
规则按顺序匹配（小写子串），第一条命中的规则生效。
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple


@dataclass(frozen=True)
class TopicRule:
    """单条话题规则"""
    triggers: Tuple[str, ...]
    topic: str
    category: str
    topics: Tuple[str, ...] = field(default_factory=tuple)

    def matches(self, message: str) -> bool:
        return any(trigger in message for trigger in self.triggers)


@dataclass
class TopicMatch:
    """推断结果"""
    topic: str
    category: str
    topics: List[str]


DEFAULT_TOPIC_RULES: Tuple[TopicRule, ...] = (
    TopicRule(("dashboard",), "Dashboards", "Navigation", ("Dashboards", "Navigation")),
    TopicRule(("alert",), "Alerts", "Security", ("Alerts", "Security")),
    TopicRule(("anomaly",), "Anomalies", "tbUEBA", ("Anomalies", "tbUEBA", "Behavior")),
    TopicRule(("rule",), "Rules", "Configuration", ("Rules", "Configuration", "Detection")),
    TopicRule(("investigation",), "Investigations", "Security", ("Investigations", "Security", "Cases")),
    TopicRule(("report",), "Reports", "Analytics", ("Reports", "Analytics", "Summary")),
    TopicRule(("tbsiem", "siem"), "tbSIEM", "SIEM", ("tbSIEM", "SIEM", "Logs", "Threats")),
    TopicRule(("tbueba", "ueba"), "tbUEBA", "UEBA", ("tbUEBA", "UEBA", "Behavior", "Analytics")),
)


class TopicClassifier:
    """
    基于规则的话题分类器

    Args:
        rules: 规则列表（按顺序匹配）
    """

    def __init__(self, rules: Optional[Tuple[TopicRule, ...]] = None):
        self.rules = tuple(rules) if rules is not None else DEFAULT_TOPIC_RULES

    def classify(self, message: str) -> Optional[TopicMatch]:
        """
        推断消息的话题

        Returns:
            第一条命中规则的结果；无命中返回 None
        """
        lowered = (message or "").lower()
        for rule in self.rules:
            if rule.matches(lowered):
                return TopicMatch(topic=rule.topic, category=rule.category, topics=list(rule.topics))
        return None
