"""Category routing: which product group owns a finding and who gets it by default."""

from __future__ import annotations

from dataclasses import asdict, dataclass

UNKNOWN_GROUP = "unknown"
UNASSIGNED = "Unassigned"

PRODUCT_GROUPS: dict[str, tuple[str, ...]] = {
    "devsecops": ("SAST", "DAST", "code_scanning", "secrets"),
    "devops": ("cloud", "k8s", "iam", "cspm", "security_hub"),
    "endpoint": ("endpoint", "edr", "mdm", "mobile", "patch", "vuln_mgmt"),
}


@dataclass(frozen=True)
class RoutingRule:
    category: str
    product_group: str
    assignee: str
    role: str


@dataclass(frozen=True)
class Route:
    product_group: str
    assignee: str

    def to_dict(self) -> dict:
        return asdict(self)


ROUTING_RULES: tuple[RoutingRule, ...] = (
    RoutingRule("SAST", "devsecops", "Alice Chen", "DevSecOps Lead"),
    RoutingRule("DAST", "devsecops", "Bob Kumar", "Security Engineer"),
    RoutingRule("cloud", "devops", "Charlie Davis", "Cloud Engineer"),
    RoutingRule("cspm", "devops", "Diana Liu", "DevOps Engineer"),
    RoutingRule("endpoint", "endpoint", "Evan Martinez", "Endpoint Engineer"),
    RoutingRule("edr", "endpoint", "Fiona Wilson", "Security Analyst"),
)

_RULES_BY_CATEGORY = {r.category.lower(): r for r in ROUTING_RULES}
_GROUP_BY_CATEGORY = {
    category.lower(): group for group, categories in PRODUCT_GROUPS.items() for category in categories
}


def route(category: str | None) -> Route:
    """Resolve a finding category to its product group and default assignee.

    Exact rules win; otherwise the category's product group is used with no
    named assignee. Unknown or empty categories land in ``unknown``.
    """
    key = (category or "").strip().lower()
    rule = _RULES_BY_CATEGORY.get(key)
    if rule:
        return Route(rule.product_group, rule.assignee)
    group = _GROUP_BY_CATEGORY.get(key)
    if group:
        return Route(group, UNASSIGNED)
    return Route(UNKNOWN_GROUP, UNASSIGNED)


def is_known_category(category: str | None) -> bool:
    return (category or "").strip().lower() in _GROUP_BY_CATEGORY


def product_group_for(category: str | None) -> str:
    return route(category).product_group
