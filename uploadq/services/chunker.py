import math
from typing import List, NamedTuple

from uploadq.core.config import DEFAULT_PART_SIZE, MIB
from uploadq.utils.exceptions import InvalidInputError

MAX_PARTS = 10000  # S3 part number upper bound


class ByteRange(NamedTuple):
    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length


def slice_file(file_size: int, part_size: int = DEFAULT_PART_SIZE) -> List[ByteRange]:
    """
    Partition ``file_size`` bytes into consecutive ranges of ``part_size``.

    Only the last range may be shorter. Part ``n`` of a plan maps to index
    ``n - 1`` of the returned list.
    """
    if file_size <= 0:
        raise InvalidInputError(f"file_size must be positive, got {file_size}")
    if part_size <= 0:
        raise InvalidInputError(f"part_size must be positive, got {part_size}")

    count = math.ceil(file_size / part_size)
    ranges = [ByteRange(i * part_size, part_size) for i in range(count - 1)]
    last_offset = (count - 1) * part_size
    ranges.append(ByteRange(last_offset, file_size - last_offset))
    return ranges


def choose_part_size(total_size: int, min_size: int = DEFAULT_PART_SIZE, max_parts: int = MAX_PARTS) -> int:
    """
    Pick a part size so that number of parts <= max_parts.
    """
    if total_size <= 0:
        raise InvalidInputError(f"total_size must be positive, got {total_size}")
    part_size = max(min_size, math.ceil(total_size / max_parts))
    # Round up to nearest MB for neatness
    return int(math.ceil(part_size / MIB) * MIB)
