# Debug visualisations for crop decisions
from typing import Optional

import cv2
import numpy as np

from functions import CropRegion, FaceBox, TightCropVerdict


def put_caption(img, text):
    """Add a black bar caption at the top of an image."""
    img = img.copy()
    cv2.rectangle(img, (0, 0), (img.shape[1], 28), (0, 0, 0), -1)
    cv2.putText(img, text, (8, 20), cv2.FONT_HERSHEY_SIMPLEX, 0.6,
                (255, 255, 255), 1, cv2.LINE_AA)
    return img


def draw_crop_decision(img: np.ndarray,
                       region: CropRegion,
                       face_box: Optional[FaceBox],
                       verdict: Optional[TightCropVerdict],
                       strategy: str) -> np.ndarray:
    """Overlay the chosen crop (green) and detected face (orange) on a copy of ``img``."""
    out = img.copy()
    x1, y1, x2, y2 = region.as_box()
    cv2.rectangle(out, (x1, y1), (x2 - 1, y2 - 1), (0, 200, 0), 3)

    if face_box is not None:
        fx1, fy1 = int(round(face_box.x)), int(round(face_box.y))
        fx2 = int(round(face_box.x + face_box.width))
        fy2 = int(round(face_box.y + face_box.height))
        cv2.rectangle(out, (fx1, fy1), (fx2, fy2), (0, 165, 255), 2)
        cx, cy = face_box.center
        cv2.circle(out, (int(round(cx)), int(round(cy))), 4, (0, 165, 255), -1)

    caption = f"{strategy} crop {region.width}x{region.height} at ({region.left}, {region.top})"
    if verdict is not None:
        caption += f" | ratio {verdict.face_ratio:.4f} edge {verdict.min_edge_distance:.2f}"
    return put_caption(out, caption)
