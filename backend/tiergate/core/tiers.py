"""
等级模型（Tier Model）

进程启动时从 config/tier_catalog.json 加载一次，之后只读。
所有组件都通过这里获取等级排名、工具所需等级、支付链接映射，
任何地方都不要硬编码排名或产品映射。

排名的默认值是不对称的：
- 用户持有的未知等级 -> 0（不能授予任何访问）
- 要求的未知等级 -> UNSATISFIABLE_RANK（任何等级都无法满足）

admin 是解析时叠加的虚拟等级，从不写入 profile.tier。
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from types import MappingProxyType
from typing import Any, Iterable, Mapping

ADMIN_TIER = "admin"
GUEST_TIER = "guest"
ADMIN_RANK = 999
UNSATISFIABLE_RANK = 1_000_000

TIER_PREFIX = "tier_"
TOOL_PREFIX = "tool_"
FEATURE_PREFIX = "feature_"
INTERNAL_PREFIX = "internal_"
PRODUCT_KEY_PREFIXES = (TIER_PREFIX, TOOL_PREFIX, FEATURE_PREFIX, INTERNAL_PREFIX)

WHITE_LABEL_PRODUCT_KEY = "feature_whitelabel"

CATALOG_PATH = Path(__file__).resolve().parents[1] / "config" / "tier_catalog.json"


@dataclass(frozen=True)
class CatalogProduct:
    """支付链接映射到的内部产品"""
    product_key: str
    tier: str | None
    expires_days: int | None


@dataclass(frozen=True)
class TierModel:
    """
    不可变的等级配置

    构造后所有映射都是 MappingProxyType，运行时无法修改。
    """
    ranks: Mapping[str, int]
    names: Mapping[str, str]
    calculator_tiers: frozenset[str]
    tool_access: Mapping[str, str]
    tool_product_keys: Mapping[str, str]
    internal_tools: Mapping[str, str]
    tool_paths: Mapping[str, str]
    features: Mapping[str, str]
    payment_links: Mapping[str, CatalogProduct]
    tier_payment_links: Mapping[str, str]
    calculator_entitlement_days: int
    renewal_link_base: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TierModel":
        tiers: Mapping[str, Any] = data.get("tiers", {})
        ranks = {name: int(info.get("rank", 0)) for name, info in tiers.items()}
        ranks.setdefault(GUEST_TIER, 0)
        ranks[ADMIN_TIER] = ADMIN_RANK
        names = {name: str(info.get("name", name)) for name, info in tiers.items()}
        names[ADMIN_TIER] = "Admin"

        calculator_tiers = frozenset(
            name for name, info in tiers.items() if info.get("billing") == "monthly"
        )
        days = int(data.get("calculator_entitlement_days", 30))

        tool_access = dict(data.get("tool_access", {}))
        tool_product_keys = {
            tool_id: f"{TOOL_PREFIX}{tool_id}" for tool_id in tool_access
        }
        tool_product_keys.update(data.get("tool_product_keys", {}))

        tier_payment_links: dict[str, str] = {}
        payment_links: dict[str, CatalogProduct] = {}
        for name, info in tiers.items():
            link_id = info.get("payment_link_id")
            if not link_id:
                continue
            tier_payment_links[name] = link_id
            payment_links[link_id] = CatalogProduct(
                product_key=f"{TIER_PREFIX}{name}",
                tier=name,
                expires_days=days if name in calculator_tiers else None,
            )
        for link_id, entry in (data.get("payment_links") or {}).items():
            tier = entry.get("tier")
            payment_links[link_id] = CatalogProduct(
                product_key=entry["product_key"],
                tier=tier,
                expires_days=entry.get(
                    "expires_days", days if tier in calculator_tiers else None
                ),
            )

        return cls(
            ranks=MappingProxyType(ranks),
            names=MappingProxyType(names),
            calculator_tiers=calculator_tiers,
            tool_access=MappingProxyType(tool_access),
            tool_product_keys=MappingProxyType(tool_product_keys),
            internal_tools=MappingProxyType(dict(data.get("internal_tools", {}))),
            tool_paths=MappingProxyType(dict(data.get("tool_paths", {}))),
            features=MappingProxyType(dict(data.get("features", {}))),
            payment_links=MappingProxyType(payment_links),
            tier_payment_links=MappingProxyType(tier_payment_links),
            calculator_entitlement_days=days,
            renewal_link_base=str(data.get("renewal_link_base", "")),
        )

    # ------------------------------------------------------------------
    # 排名
    # ------------------------------------------------------------------

    def rank(self, tier: str | None) -> int:
        """用户持有等级的排名；未知或空值为 0"""
        if not tier:
            return 0
        return self.ranks.get(tier, 0)

    def required_rank(self, tier: str | None) -> int:
        """要求等级的排名；未知或空值永远无法满足"""
        if not tier:
            return UNSATISFIABLE_RANK
        return self.ranks.get(tier, UNSATISFIABLE_RANK)

    def covers(self, held_tier: str | None, required_tier: str | None) -> bool:
        return self.rank(held_tier) >= self.required_rank(required_tier)

    def is_known_tier(self, tier: str | None) -> bool:
        return bool(tier) and tier in self.ranks

    def is_persistable_tier(self, tier: str | None) -> bool:
        """可以写入 profile.tier 的等级（admin 除外）"""
        return self.is_known_tier(tier) and tier != ADMIN_TIER

    def paid_tiers(self) -> list[str]:
        return [t for t, r in self.ranks.items() if r > 0 and t != ADMIN_TIER]

    def highest_tier(self, tiers: Iterable[str | None]) -> str | None:
        """返回排名最高的等级；全部为 0 时返回 None"""
        best: str | None = None
        best_rank = 0
        for tier in tiers:
            r = self.rank(tier)
            if r > best_rank:
                best, best_rank = tier, r
        return best

    def tier_name(self, tier: str | None) -> str:
        if not tier:
            return self.names.get(GUEST_TIER, GUEST_TIER)
        return self.names.get(tier, tier)

    # ------------------------------------------------------------------
    # 工具 / 功能
    # ------------------------------------------------------------------

    def required_tier_for_tool(self, tool_id: str) -> str | None:
        return self.tool_access.get(tool_id)

    def is_internal_tool(self, tool_id: str) -> bool:
        return tool_id in self.internal_tools

    def is_known_tool(self, tool_id: str) -> bool:
        return tool_id in self.tool_access or tool_id in self.internal_tools

    def tool_product_key(self, tool_id: str) -> str | None:
        """工具对应的附加购买 product_key；未知工具为 None"""
        if tool_id in self.internal_tools:
            return self.internal_tools[tool_id]
        return self.tool_product_keys.get(tool_id)

    def tool_id_for_path(self, path: str | None) -> str | None:
        """从 /tools/<file>.html 这类路径提取工具 ID"""
        if not path or "/tools/" not in path:
            return None
        segments = [s for s in path.split("?", 1)[0].split("/") if s]
        try:
            idx = segments.index("tools")
        except ValueError:
            return None
        if idx >= len(segments) - 1:
            return None
        return self.tool_paths.get(segments[idx + 1])

    def required_tier_for_feature(self, product_key: str) -> str | None:
        return self.features.get(product_key)

    # ------------------------------------------------------------------
    # 产品映射
    # ------------------------------------------------------------------

    def product_key_for_tier(self, tier: str | None) -> str | None:
        if not self.is_persistable_tier(tier) or tier == GUEST_TIER:
            return None
        return f"{TIER_PREFIX}{tier}"

    def tier_for_product_key(self, product_key: str | None) -> str | None:
        if not product_key or not product_key.startswith(TIER_PREFIX):
            return None
        tier = product_key[len(TIER_PREFIX):]
        return tier if self.product_key_for_tier(tier) else None

    def is_known_product_key(self, product_key: str | None) -> bool:
        if not product_key:
            return False
        if product_key.startswith(TIER_PREFIX):
            return self.tier_for_product_key(product_key) is not None
        if product_key.startswith(TOOL_PREFIX):
            return product_key in set(self.tool_product_keys.values())
        if product_key.startswith(FEATURE_PREFIX):
            return product_key in self.features
        if product_key.startswith(INTERNAL_PREFIX):
            return product_key in set(self.internal_tools.values())
        return False

    def product_for_payment_link(self, link_id: str | None) -> CatalogProduct | None:
        if not link_id:
            return None
        return self.payment_links.get(link_id)

    def is_calculator_tier(self, tier: str | None) -> bool:
        return bool(tier) and tier in self.calculator_tiers

    def calculator_product_keys(self) -> list[str]:
        return sorted(f"{TIER_PREFIX}{t}" for t in self.calculator_tiers)

    def expires_days_for_product_key(self, product_key: str) -> int | None:
        """认领 / 管理员授予时使用的默认有效期（天）"""
        if self.is_calculator_tier(self.tier_for_product_key(product_key)):
            return self.calculator_entitlement_days
        return None

    def renewal_link(self, tier: str | None) -> str | None:
        link_id = self.tier_payment_links.get(tier or "")
        if link_id is None and self.calculator_tiers:
            # 未知等级默认给最低的月付档
            cheapest = min(self.calculator_tiers, key=lambda t: self.ranks.get(t, 0))
            link_id = self.tier_payment_links.get(cheapest)
        if not link_id:
            return None
        return f"{self.renewal_link_base}{link_id}"


_lock = Lock()
_model: TierModel | None = None


def load_tier_model(path: Path = CATALOG_PATH) -> TierModel:
    return TierModel.from_dict(json.loads(path.read_text(encoding="utf-8")))


def get_tier_model() -> TierModel:
    """获取全局等级模型（首次调用时加载）"""
    global _model
    with _lock:
        if _model is None:
            _model = load_tier_model()
        return _model
