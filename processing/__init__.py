from dataclasses import dataclass
from typing import Optional

from integrations.errors import ValidationError


ABSOLUTE = "absolute"
PERCENTAGE = "percentage"

IMAGE = "image"
VIDEO = "video"

# Lower percentage bound per media kind; video is otherwise bounded by the search's ratio clamp
MIN_PERCENTAGE = {IMAGE: 5.0, VIDEO: 0.0}
MIN_ABSOLUTE = 1.0


@dataclass(frozen=True)
class SizeSpec:
    """Requested output size: absolute (KB for images, MB for video) or a percentage."""

    kind: str
    value: float
    raw: str

    @property
    def is_percentage(self) -> bool:
        return self.kind == PERCENTAGE


@dataclass
class CompressionResult:
    data: bytes
    size_reduction: Optional[float]
    cached: bool
    content_type: str = "application/octet-stream"
    extension: str = ".bin"


def size_reduction_percent(original_length: int, compressed_length: int) -> float:
    if not original_length:
        return 0.0
    return (original_length - compressed_length) / original_length * 100


def parse_size_spec(raw: Optional[str], media_kind: str = IMAGE) -> SizeSpec:
    """Parse ``"50%"`` or ``"5"`` into a SizeSpec, validating bounds for the media kind.

    Raises ValidationError for missing, non-numeric, or out-of-range values.
    """
    if raw is None or not raw.strip():
        raise ValidationError("size parameter is required")

    text = raw.strip()
    is_percentage = text.endswith("%")
    number = text[:-1].strip() if is_percentage else text

    try:
        value = float(number)
    except ValueError:
        raise ValidationError(f"Invalid size value: {raw}") from None
    if value != value or value in (float("inf"), float("-inf")):
        raise ValidationError(f"Invalid size value: {raw}")

    if is_percentage:
        floor = MIN_PERCENTAGE.get(media_kind, MIN_PERCENTAGE[IMAGE])
        if media_kind == VIDEO:
            in_range = floor < value <= 100
        else:
            in_range = floor <= value <= 100
        if not in_range:
            bound = f"({floor:g}, 100]" if media_kind == VIDEO else f"[{floor:g}, 100]"
            raise ValidationError(f"Percentage for {media_kind} must be within {bound}, got {value:g}%")
        return SizeSpec(kind=PERCENTAGE, value=value, raw=text)

    if value < MIN_ABSOLUTE:
        raise ValidationError(f"Absolute size must be at least {MIN_ABSOLUTE:g}, got {value:g}")
    return SizeSpec(kind=ABSOLUTE, value=value, raw=text)
