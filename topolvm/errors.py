"""Errors raised while driving LVM and inspecting its state."""

from __future__ import annotations

import re

MINIMUM_SECTOR_SIZE = 4096
"""Volume sizes must be a multiple of this many bytes."""

NOT_FOUND_PATTERN = re.compile(
    r'Volume group "(.*?)" not found|Failed to find logical volume "(.*?)"'
)
"""Matches LVM messages saying that a volume group or logical volume is missing."""

_NOT_FOUND_EXIT_CODE = 5


class NotFoundError(LookupError):
    """A volume group, logical volume or thin pool does not exist."""

    def __init__(self, message: str = "not found") -> None:
        super().__init__(message)


class SectorSizeError(ValueError):
    """A requested volume size is not a multiple of the minimum sector size."""

    def __init__(self, sector_size: int = MINIMUM_SECTOR_SIZE) -> None:
        super().__init__(
            f"cannot create volume as given size is not a multiple of {sector_size} "
            "and could get rejected"
        )
        self.sector_size = sector_size


class LVMError(Exception):
    """An lvm command failed; carries its exit status and standard error output."""

    def __init__(
        self,
        message: str,
        *,
        stderr: bytes | None = None,
        returncode: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stderr = stderr
        self.returncode = returncode

    def __str__(self) -> str:
        if self.stderr is not None:
            text = self.stderr.decode("utf-8", errors="replace").strip()
            return f"{self.message}: {text}"
        return self.message

    def exit_code(self) -> int:
        """Return the process exit code, or -1 when there is none."""
        if self.returncode is None or self.returncode < 0:
            return -1
        return self.returncode


def as_lvm_error(err: BaseException | None) -> LVMError | None:
    """Return the LVMError in the exception chain of ``err``, if any."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, LVMError):
            return err
        seen.add(id(err))
        err = err.__cause__ or err.__context__
    return None


def is_lvm_not_found(err: BaseException | None) -> bool:
    """Tell whether ``err`` is LVM reporting a missing volume group or volume."""
    lvm_error = as_lvm_error(err)
    if lvm_error is None or lvm_error.exit_code() != _NOT_FOUND_EXIT_CODE:
        return False
    return NOT_FOUND_PATTERN.search(str(lvm_error)) is not None