# Overview: Subscription plan feature table.

# Billing lives outside this service; only the feature flags matter here.
PLAN_FEATURES = {
    "pro": {
        "api_access": False,
        "webhooks": True,
        "integrations": True,
    },
    "enterprise": {
        "api_access": True,
        "webhooks": True,
        "integrations": True,
    },
}

DEFAULT_PLAN = "pro"


def plan_has_feature(plan: str | None, feature: str) -> bool:
    return bool(PLAN_FEATURES.get(plan or DEFAULT_PLAN, {}).get(feature, False))
