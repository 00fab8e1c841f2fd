from stackplan.stacks import three_tier

STACKS = {
    "three-tier": three_tier.build,
}
