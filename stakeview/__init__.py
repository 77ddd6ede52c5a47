"""stakeview: validator staking performance aggregation for Substrate relay chains."""

__version__ = "0.1.0"
