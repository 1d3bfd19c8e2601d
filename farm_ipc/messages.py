"""
Text frames for the statistics and command channels.

A statistics frame is ``"<name>:<value>"`` in UTF-8.  The delimiter is
not escaped, so names must not contain ``:``; values may.  Error
reports are statistics frames whose name is :data:`ERROR_MESSAGE_TAG`.

Command frames are opaque UTF-8 strings.
"""

ERROR_MESSAGE_TAG = "ErrorMessage"
STATISTICS_DELIMITER = ":"

_ENCODING = "utf-8"


def encode_statistics(name: str, value: str) -> bytes:
    """Build the frame for one statistics entry.

    Raises:
        ValueError:         If *name* or *value* is empty.
        UnicodeEncodeError: If either holds a lone surrogate.

    Example::

        encode_statistics("BurstID", "1234")   # b"BurstID:1234"
    """
    if not name or not value:
        raise ValueError("Statistics name and value must both be non-empty")
    return f"{name}{STATISTICS_DELIMITER}{value}".encode(_ENCODING)


def decode_text(frame: bytes) -> str:
    return frame.decode(_ENCODING, errors="replace")


def parse_statistics(frame: str) -> tuple[str, str]:
    """Split a received statistics frame into ``(name, value)``.

    Splits on the first delimiter only.  A frame without a delimiter
    yields ``(frame, "")``.
    """
    name, _, value = frame.partition(STATISTICS_DELIMITER)
    return name, value


def is_error_message(frame: str) -> bool:
    return parse_statistics(frame)[0] == ERROR_MESSAGE_TAG


def encode_command(command: str) -> bytes:
    if not command:
        raise ValueError("Command must be non-empty")
    return command.encode(_ENCODING)


decode_command = decode_text
