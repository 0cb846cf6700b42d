"""
flagkit - feature flags resolved per context.

Usage Levels:

Level 1 - Global switch:
    from flagkit import FeatureManager, MemoryDriver

    features = FeatureManager(MemoryDriver())
    features.define("new-dashboard", True)
    features.active("new-dashboard")

Level 2 - Per user:
    features.activate("beta-reports", user)
    features.active("beta-reports", user)

Level 3 - Rollout strategies:
    features.define("new-checkout", PercentageStrategy(25, seed="checkout"))
    features.define("summer-sale", ScheduledStrategy(activate_at=start, deactivate_at=end))

Level 4 - Scoped overrides:
    team = Scope("team", {"org_id": 5, "team_id": None})
    features.activate("ai-search", Context.scoped(user.id, "user", team))

Level 5 - Snapshots:
    snapshots = MemorySnapshotRepository(features)
    snapshot_id = snapshots.capture(user, label="before-experiment")
    snapshots.restore(snapshot_id, user)

Level 6 - Variants and groups:
    features.define_variant("checkout-copy", {"control": 50, "short": 30, "long": 20})
    features.variant("checkout-copy", user)

    groups = GroupManager(features, MemoryGroupRepository())
    groups.define("checkout-v2", ["new-cart", "one-click-pay"])
    groups.activate("checkout-v2", user)
"""

from .config import FlagSettings, get_settings
from .context import (
    Context,
    ContextResolver,
    Contextable,
    GuestContext,
    KeyRegistry,
    Scope,
)
from .drivers import CacheDriver, DatabaseDriver, MemoryDriver
from .events import (
    EventDispatcher,
    FeatureActivated,
    FeatureDeactivated,
    ListenerPriority,
    UnknownFeatureResolved,
)
from .exceptions import (
    FlagError,
    InputError,
    GroupNotFound,
    MigrationError,
    NotFoundError,
    StateError,
)
from .groups import (
    DatabaseGroupRepository,
    GroupManager,
    MemoryGroupRepository,
    create_group_manager,
)
from .interfaces import (
    Driver,
    FeatureGroup,
    GroupRepository,
    Migrator,
    Snapshot,
    SnapshotEntry,
    SnapshotEvent,
    SnapshotRepository,
)
from .manager import FeatureManager
from .migrators import FlagTableMigrator, PennantMigrator
from .snapshots import (
    AutoSnapshotListener,
    CacheSnapshotRepository,
    DatabaseSnapshotRepository,
    MemorySnapshotRepository,
    create_repository,
)
from .strategies import (
    BooleanStrategy,
    ConditionalStrategy,
    PercentageStrategy,
    ScheduledStrategy,
    Strategy,
    TimeBasedStrategy,
    VariantStrategy,
    strategy_from_config,
)
from .values import FeatureState, FeatureValue

__all__ = [
    # Config
    "FlagSettings",
    "get_settings",
    # Context
    "Context",
    "ContextResolver",
    "Contextable",
    "GuestContext",
    "KeyRegistry",
    "Scope",
    # Drivers
    "Driver",
    "CacheDriver",
    "DatabaseDriver",
    "MemoryDriver",
    # Events
    "EventDispatcher",
    "FeatureActivated",
    "FeatureDeactivated",
    "ListenerPriority",
    "UnknownFeatureResolved",
    # Errors
    "FlagError",
    "InputError",
    "GroupNotFound",
    "MigrationError",
    "NotFoundError",
    "StateError",
    # Manager
    "FeatureManager",
    "FeatureState",
    "FeatureValue",
    # Strategies
    "Strategy",
    "BooleanStrategy",
    "ConditionalStrategy",
    "PercentageStrategy",
    "ScheduledStrategy",
    "TimeBasedStrategy",
    "VariantStrategy",
    "strategy_from_config",
    # Snapshots
    "Snapshot",
    "SnapshotEntry",
    "SnapshotEvent",
    "SnapshotRepository",
    "AutoSnapshotListener",
    "CacheSnapshotRepository",
    "DatabaseSnapshotRepository",
    "MemorySnapshotRepository",
    "create_repository",
    # Groups
    "FeatureGroup",
    "GroupRepository",
    "DatabaseGroupRepository",
    "GroupManager",
    "MemoryGroupRepository",
    "create_group_manager",
    # Migration
    "Migrator",
    "FlagTableMigrator",
    "PennantMigrator",
]
