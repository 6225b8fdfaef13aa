"""Operation parameter validation and provider prompts."""

from __future__ import annotations

from typing import Any, Dict, Optional

from services.errors import ValidationError


# Enhancer prompts must preserve facial identity; this is not a generator.
ENHANCE_PROMPTS = {
    "auto": (
        "Enhance this photo naturally. Keep all faces exactly the same - do not change any facial "
        "features, identity, or appearance of any person. Only improve lighting, colors, and clarity."
    ),
    "portrait": (
        "Enhance this photo as portrait, naturally. Keep all faces exactly the same - do not change any "
        "facial features, identity, or appearance of any person. Only improve lighting, colors, and clarity."
    ),
    "landscape": "Enhance this image as a landscape photo.",
    "lowLight": (
        "Brighten this dark photo naturally. Reduce noise. If there are faces, keep them exactly the "
        "same - do not alter any facial features."
    ),
    "hdr": (
        "Apply HDR effect to this photo. Keep all faces exactly the same - do not change any facial "
        "features, identity, or appearance of any person. Only improve lighting, colors, and clarity."
    ),
}

STYLE_PROMPTS = {
    "anime": (
        "Transform this image into anime/manga art style with clean lines, vibrant colors, and "
        "characteristic anime aesthetics. Return the transformed image."
    ),
    "oil_painting": (
        "Transform this image into a classical oil painting style with visible brushstrokes, rich "
        "colors, and artistic texture. Return the transformed image."
    ),
    "watercolor": (
        "Transform this image into a beautiful watercolor painting with soft edges, flowing colors, "
        "and artistic water effects. Return the transformed image."
    ),
    "sketch": (
        "Transform this image into a detailed pencil sketch with fine lines, shading, and artistic "
        "drawing style. Return the transformed image."
    ),
    "pop_art": (
        "Transform this image into bold pop art style with bright colors, halftone dots, and "
        "comic-book aesthetics. Return the transformed image."
    ),
}

FILTER_PROMPTS = {
    "vintage": "Apply a warm faded vintage film look to this photo. Keep all faces unchanged. Return the filtered image.",
    "noir": "Convert this photo to high-contrast black and white film noir. Keep all faces unchanged. Return the filtered image.",
    "warm": "Apply a gentle warm color grade to this photo. Keep all faces unchanged. Return the filtered image.",
    "cool": "Apply a gentle cool blue color grade to this photo. Keep all faces unchanged. Return the filtered image.",
    "vivid": "Boost color saturation and contrast of this photo tastefully. Keep all faces unchanged. Return the filtered image.",
}

RESTORE_PROMPT = (
    "Restore this old/damaged photo: repair any scratches, tears, fading, or discoloration. Remove dust "
    "spots and damage marks. Enhance clarity and bring back the original quality of the photo while "
    "preserving its authentic vintage character. Return the restored image."
)

UPSCALE_PROMPT = (
    "Upscale and enhance this image to higher resolution. Improve sharpness, add fine details, reduce "
    "any artifacts or blur, and make the image look crisp and high-definition. Return the upscaled image."
)

FACE_SWAP_PROMPT = (
    "Swap the face of the person in the first image with the face from the second image. Match skin "
    "tone, lighting, and head angle so the result looks natural. Return the edited image."
)

AGING_PROMPT = (
    "Transform this person's face to show how they would look at age {target_age}. Add realistic "
    "age-appropriate features like wrinkles, skin texture changes, and natural aging effects while "
    "maintaining their core facial features and identity. Return the aged image."
)

MIN_TARGET_AGE = 1
MAX_TARGET_AGE = 120


def _choice(params: Dict[str, Any], key: str, options: Dict[str, str], default: str) -> str:
    value = params.get(key, default)
    if not isinstance(value, str) or value not in options:
        raise ValidationError(
            f"Invalid {key} '{value}'.",
            allowed_values=sorted(options),
        )
    return value


def normalize_parameters(operation_type: str, parameters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate operation parameters and fill in defaults."""
    params = dict(parameters or {})

    if operation_type == "enhance":
        return {"enhanceType": _choice(params, "enhanceType", ENHANCE_PROMPTS, "auto")}
    if operation_type == "styleTransfer":
        return {"style": _choice(params, "style", STYLE_PROMPTS, "anime")}
    if operation_type == "filter":
        return {"filter": _choice(params, "filter", FILTER_PROMPTS, "vintage")}
    if operation_type == "aging":
        raw_age = params.get("targetAge", 60)
        if isinstance(raw_age, bool) or (isinstance(raw_age, float) and not raw_age.is_integer()):
            raise ValidationError(f"targetAge must be an integer, got '{raw_age}'.")
        try:
            target_age = int(raw_age)
        except (TypeError, ValueError):
            raise ValidationError(f"targetAge must be an integer, got '{raw_age}'.")
        if not MIN_TARGET_AGE <= target_age <= MAX_TARGET_AGE:
            raise ValidationError(
                f"targetAge must be between {MIN_TARGET_AGE} and {MAX_TARGET_AGE}."
            )
        return {"targetAge": target_age}
    return {}


def build_prompt(operation_type: str, parameters: Optional[Dict[str, Any]] = None) -> str:
    params = parameters or {}
    if operation_type == "enhance":
        return ENHANCE_PROMPTS.get(params.get("enhanceType"), ENHANCE_PROMPTS["auto"])
    if operation_type == "restore":
        return RESTORE_PROMPT
    if operation_type == "upscale":
        return UPSCALE_PROMPT
    if operation_type == "faceSwap":
        return FACE_SWAP_PROMPT
    if operation_type == "aging":
        return AGING_PROMPT.format(target_age=params.get("targetAge", 60))
    if operation_type == "styleTransfer":
        return STYLE_PROMPTS.get(params.get("style"), STYLE_PROMPTS["anime"])
    if operation_type == "filter":
        return FILTER_PROMPTS.get(params.get("filter"), FILTER_PROMPTS["vintage"])
    raise ValidationError(f"Unsupported operation type '{operation_type}'.")
