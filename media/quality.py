"""Target quality shared by the batch and live transcode stages."""

from __future__ import annotations

from dataclasses import dataclass

# (minimum height, video bitrate), highest tier first.
BITRATE_TIERS = (
    (720, "1000k"),
    (480, "500k"),
)
LOW_BITRATE = "300k"


@dataclass(frozen=True)
class QualitySpec:
    height: int

    def __post_init__(self) -> None:
        if not isinstance(self.height, int) or self.height <= 0:
            raise ValueError(f"quality height must be a positive integer, got {self.height!r}")

    @classmethod
    def parse(cls, value: str | int) -> "QualitySpec":
        raw = str(value).strip().lower().removesuffix("p")
        try:
            height = int(raw)
        except ValueError:
            raise ValueError(f"invalid video quality: {value!r}") from None
        return cls(height)

    @property
    def video_bitrate(self) -> str:
        for min_height, bitrate in BITRATE_TIERS:
            if self.height >= min_height:
                return bitrate
        return LOW_BITRATE

    @property
    def format_sort(self) -> list[str]:
        return [f"res:{self.height}", "ext:mp4:m4a"]

    @property
    def scale_filter(self) -> str:
        return f"scale=-2:{self.height}"
