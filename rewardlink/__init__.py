"""RewardLink: chat bot bridging a rewards community service with Discord.

The interesting part lives in :mod:`rewardlink.services`: the Interactive-Post
Engine that binds remote tasks and allowlists to chat messages, keeps those
messages reconciled with the backend, and runs the per-user entry pipeline.
"""

__version__ = "0.4.0"
