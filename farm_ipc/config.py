"""
Channel addresses for farm_ipc.
"""

from dataclasses import dataclass

DEFAULT_STATE_ADDRESS = "farm-state"
DEFAULT_STATISTICS_ADDRESS = "farm-statistics"
DEFAULT_COMMAND_ADDRESS = "farm-command"


@dataclass(frozen=True)
class ChannelAddresses:
    """The three well-known addresses shared by workers and the collector.

    Example::

        addresses = ChannelAddresses.with_prefix("farm2")
        addresses.state        # "farm2-state"
    """

    state: str = DEFAULT_STATE_ADDRESS
    statistics: str = DEFAULT_STATISTICS_ADDRESS
    command: str = DEFAULT_COMMAND_ADDRESS

    @classmethod
    def with_prefix(cls, prefix: str) -> "ChannelAddresses":
        return cls(
            state=f"{prefix}-state",
            statistics=f"{prefix}-statistics",
            command=f"{prefix}-command",
        )
