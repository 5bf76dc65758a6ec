from typing import NamedTuple, Optional, Tuple

EPSILON = 1e-6
MIN_DRAG_PX = 1.0

RESIZE_HANDLES = {"n", "s", "e", "w", "ne", "nw", "se", "sw", "move"}

Point = Tuple[float, float]
Size = Tuple[float, float]


class Box(NamedTuple):
    x: float
    y: float
    w: float
    h: float

    @property
    def right(self) -> float:
        return self.x + self.w

    @property
    def bottom(self) -> float:
        return self.y + self.h


def clamp(value: float, lower: float, upper: float) -> float:
    return min(upper, max(lower, value))


def clamp_normalized(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return clamp(float(value), lower, upper)


def normalize_point(point: Point, container_size: Size) -> Optional[Point]:
    width, height = container_size
    if width <= 0 or height <= 0:
        return None
    return (
        clamp_normalized(point[0] / width),
        clamp_normalized(point[1] / height),
    )


def box_from_drag(start: Point, end: Point, container_size: Size) -> Optional[Box]:
    width, height = container_size
    if width <= 0 or height <= 0:
        return None
    # drags that leave the container are cut at its edge
    x0 = clamp(start[0], 0.0, width)
    y0 = clamp(start[1], 0.0, height)
    x1 = clamp(end[0], 0.0, width)
    y1 = clamp(end[1], 0.0, height)
    drag_w = abs(x1 - x0)
    drag_h = abs(y1 - y0)
    if drag_w <= MIN_DRAG_PX or drag_h <= MIN_DRAG_PX:
        return None
    return Box(
        x=min(x0, x1) / width,
        y=min(y0, y1) / height,
        w=drag_w / width,
        h=drag_h / height,
    )


def box_to_pixels(box: Box, container_size: Size) -> Box:
    width, height = container_size
    return Box(box.x * width, box.y * height, box.w * width, box.h * height)


def is_out_of_bounds(box: Box, epsilon: float = EPSILON) -> bool:
    return (
        box.x < -epsilon
        or box.y < -epsilon
        or box.w <= 0
        or box.h <= 0
        or box.right > 1 + epsilon
        or box.bottom > 1 + epsilon
    )


def is_too_small_or_large(box: Box, min_size: float, max_size: float) -> bool:
    return (
        box.w < min_size - EPSILON
        or box.h < min_size - EPSILON
        or box.w > max_size + EPSILON
        or box.h > max_size + EPSILON
    )


def fit_box(box: Box, min_size: float) -> Box:
    if not 0 < min_size <= 1:
        raise ValueError("min_size must be in (0, 1]")
    w = clamp(box.w, min_size, 1.0)
    h = clamp(box.h, min_size, 1.0)
    return Box(clamp(box.x, 0.0, 1.0 - w), clamp(box.y, 0.0, 1.0 - h), w, h)


def apply_resize(origin: Box, handle: str, delta: Point, min_size: float) -> Box:
    if handle not in RESIZE_HANDLES:
        raise ValueError(f"Unknown resize handle: {handle}")
    box = fit_box(origin, min_size)
    dx, dy = delta
    if handle == "move":
        return Box(
            clamp(box.x + dx, 0.0, 1.0 - box.w),
            clamp(box.y + dy, 0.0, 1.0 - box.h),
            box.w,
            box.h,
        )

    left, top, right, bottom = box.x, box.y, box.right, box.bottom
    if "w" in handle:
        left = clamp(left + dx, 0.0, right - min_size)
    if "e" in handle:
        right = clamp(right + dx, left + min_size, 1.0)
    if "n" in handle:
        top = clamp(top + dy, 0.0, bottom - min_size)
    if "s" in handle:
        bottom = clamp(bottom + dy, top + min_size, 1.0)
    return Box(left, top, right - left, bottom - top)
