"""Deployment cost estimates."""

COST_ESTIMATES = {
    "compute_deploy": 0.01,
    "compute_build_per_minute": 0.005,
}

DEFAULT_BUILD_MINUTES = 2


def deployment_cost(build_minutes: int) -> float:
    """Flat deploy fee plus build time."""
    minutes = build_minutes or DEFAULT_BUILD_MINUTES
    return round(
        COST_ESTIMATES["compute_deploy"] + minutes * COST_ESTIMATES["compute_build_per_minute"], 6
    )
