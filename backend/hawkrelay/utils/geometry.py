def scale_box(box, src_size, dst_size):
    """Map an (x1, y1, x2, y2) box from a src (w, h) frame onto a dst (w, h) frame."""
    sw, sh = src_size
    dw, dh = dst_size
    if sw <= 0 or sh <= 0:
        return None
    sx, sy = (dw / sw, dh / sh)
    x1, y1, x2, y2 = box
    return (x1 * sx, y1 * sy, x2 * sx, y2 * sy)


def clip_box(box, width, height):
    """Clip a box to a width x height frame; None if nothing is left of it."""
    if box is None or width <= 0 or height <= 0:
        return None
    x1, y1, x2, y2 = box
    if x1 > x2: x1, x2 = x2, x1
    if y1 > y2: y1, y2 = y2, y1
    x1c, y1c = max(0, min(width - 1, int(round(x1)))), max(0, min(height - 1, int(round(y1))))
    x2c, y2c = max(0, min(width - 1, int(round(x2)))), max(0, min(height - 1, int(round(y2))))
    if y2c > y1c and x2c > x1c:
        return (x1c, y1c, x2c, y2c)
    return None


def frame_size(frame):
    """(width, height) of an image array, (0, 0) for None or empty frames."""
    if frame is None or getattr(frame, 'ndim', 0) < 2:
        return (0, 0)
    h, w = frame.shape[:2]
    return (int(w), int(h))
