from app.services.realtime_bus import RealtimeBus
from app.services.subscription_registry import SubscriptionRegistry

# Process-wide change bus and the registry that shares its channels
bus = RealtimeBus()
registry = SubscriptionRegistry(bus)


def get_bus() -> RealtimeBus:
    return bus


def get_registry() -> SubscriptionRegistry:
    return registry
