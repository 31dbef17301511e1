import time
from enum import Enum

import httpx

from oyadeki.logging_config import get_logger, log_timing
from oyadeki.schemas.dialogue import ImageInput
from oyadeki.services.ai_service import CLASSIFY_TIMEOUT_SECONDS, get_llm_provider, normalize_for_matching
from oyadeki.services.llm import GeminiError, ImagePart

logger = get_logger("classifier_service")


class ImageIntent(str, Enum):
    HELP = "help"  # Phone screen the user is stuck on (error, settings, dialog)
    MEDIA = "media"  # Something being watched or listened to
    SELL = "sell"  # Item the user wants to list on a flea market


CLASSIFY_IMAGE_PROMPT = """この画像を見て、以下のどれか判定してください:

1. "help" - スマホの操作に困っている画面
   (エラー、設定、ダイアログ、警告、ログイン画面、アプリ更新など)

2. "media" - 視聴中のコンテンツ
   (テレビ番組、映画、スポーツ中継、YouTube、ライブ、コンサート、
    映画ポスター、CDジャケット、本の表紙など)

3. "sell" - 売りたい商品（フリマ出品用）
   (家電、ガジェット、服、バッグ、本、ゲーム機、フィギュア、
    またはそれらが机の上や背景ありで撮影されている写真)

回答: help または media または sell のみ（他の文字は含めない）"""


def classify_image_intent(image: ImageInput) -> ImageIntent:
    """Coarse intent of an inbound image. Any failure degrades to HELP."""
    llm = get_llm_provider()
    llm_start = time.monotonic()
    try:
        response = llm.generate(
            CLASSIFY_IMAGE_PROMPT,
            images=[ImagePart(data=image.data, mime_type=image.mime_type)],
            temperature=0.1,
            max_tokens=50,
            timeout_seconds=CLASSIFY_TIMEOUT_SECONDS,
        )
    except httpx.TimeoutException as e:
        log_timing(logger, "classify_image_ms", (time.monotonic() - llm_start) * 1000, timeout=True)
        logger.warning(f"Image intent timeout after {CLASSIFY_TIMEOUT_SECONDS}s: {e}")
        return ImageIntent.HELP
    except (GeminiError, httpx.HTTPError, ValueError) as e:
        logger.warning(f"Image intent classification failed: {e}")
        return ImageIntent.HELP

    log_timing(logger, "classify_image_ms", (time.monotonic() - llm_start) * 1000, model_name=response.model)

    label = normalize_for_matching(response.content)
    if "media" in label:
        return ImageIntent.MEDIA
    if "sell" in label:
        return ImageIntent.SELL
    if "help" not in label:
        logger.info(f"Unrecognized image intent label: {label!r}, defaulting to help")
    return ImageIntent.HELP
