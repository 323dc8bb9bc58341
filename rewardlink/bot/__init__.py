"""Discord client wiring for RewardLink."""

from rewardlink.bot.client import RewardLinkBot

__all__ = ["RewardLinkBot"]
