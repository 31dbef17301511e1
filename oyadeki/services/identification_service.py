"""Generative capabilities that drive the identification dialogues.

Every function returns a parsed step (``FollowUp`` or ``Finalized``) or ``None``
when the call failed or the model answered with something that fits neither
shape. Callers treat ``None`` as a recoverable failure.
"""

import json
import os
import time
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from oyadeki.logging_config import get_logger, log_timing
from oyadeki.schemas.dialogue import (
    Finalized,
    FollowUp,
    IdentificationStep,
    ImageInput,
    Listing,
    MediaCandidate,
    ProductCandidate,
)
from oyadeki.services.ai_service import (
    DIALOGUE_TIMEOUT_SECONDS,
    format_history,
    get_llm_provider,
    parse_json_response,
)
from oyadeki.services.llm import GeminiError, ImagePart

logger = get_logger("identification_service")

MEDIA_HISTORY_TURNS = int(os.environ.get("MEDIA_HISTORY_TURNS", "6"))
PRODUCT_HISTORY_TURNS = int(os.environ.get("PRODUCT_HISTORY_TURNS", "4"))

DEFAULT_VISUAL_SUMMARY = "情報不足"
DEFAULT_MEDIA_QUESTION = "この画面に映っているのは何ですか？"
DEFAULT_PRODUCT_QUESTION = "詳細を教えていただけますか？"

START_MEDIA_PROMPT = """あなたはアニメ・映画・テレビ番組・音楽・スポーツに精通したメディア鑑定士です。
この画像に映っているメディアについて、アキネイターのようにユーザーとの対話を通じて特定していきます。

【重要ルール】
- たとえ作品がわかっても、すぐに答えを出さないでください。
- まず画像から読み取れる視覚情報を整理し、ユーザーに確認する質問をしてください。
- 質問にはトリビア（豆知識）を1つ交えて、会話を楽しくしてください。
- あなたの推測（候補作品）は media_candidate に入れてください（内部データで、ユーザーには直接見せません）。
- 質問は具体的に。「このキャラはガンダムシリーズに登場しますか？」のように作品名を挙げてください。

【出力形式 - JSONのみ】
{
  "visual_clues": "画像から読み取れる視覚情報（キャラの外見、背景、文字、色使いなど）",
  "question": "ユーザーへの最初の質問。トリビアを交えて楽しく。",
  "media_candidate": {
    "media_type": "anime"|"movie"|"tv_show"|"sports"|"music"|"book"|"other",
    "title": "推測する作品タイトル",
    "subtitle": "キャラ名やエピソード名（あれば）",
    "artist_or_cast": "出演者・声優（わかれば）",
    "year": 2024,
    "trivia": "この作品に関する豆知識（1〜2文）"
  }
}

※ media_candidate は推測できない場合は null にしてください
※ JSONのみを返し、Markdownコードブロックは不要です。"""

CONTINUE_MEDIA_PROMPT = """あなたはアニメ・映画・テレビに精通したメディア鑑定士です。
アキネイターのようにユーザーとの対話を通じて、作品を特定していきます。

【現状の情報】
視覚情報: {visual_summary}
{candidate_info}
{rejected_info}
会話履歴: {history}
ユーザーの最新の回答: "{reply}"

【重要ルール】
1. ユーザーが作品名やシリーズ名を肯定した場合（「はい」「そう」「正解」「合ってる」など）：
   → パターンAで確定してください。AIの推測がある場合はそれを使い、なければユーザーの情報から特定してください。
2. ユーザーがキャラ名や作品名のヒントを出した場合：
   → あなたの知識で補完し、「○○ですね！」と確認する質問を返してください（パターンB）。
3. ユーザーが否定した場合（「違う」「いいえ」など）：
   → 別の候補を挙げて質問してください（パターンB）。否定された候補は二度と挙げないでください。
4. 質問にはトリビア（豆知識）を交えて会話を楽しくしてください。
5. 2〜3回の対話で結論を目指してください。

【出力形式 - JSONのみ】
パターンA：ユーザーが確認・肯定した場合（確定）
{{"identified": true, "data": {{"media_type": "...", "title": "作品名", "subtitle": "...", "artist_or_cast": "...", "year": 1979, "trivia": "..."}}}}

パターンB：まだ確定していない場合（対話継続）
{{"identified": false, "visual_clues": "更新された視覚情報", "question": "トリビアを交えた次の質問", "media_candidate": {{"media_type": "...", "title": "..."}}}}
※ media_candidate は新しい推測がなければ null

JSONのみを返してください。"""

START_PRODUCT_PROMPT = """あなたはフリマアプリの出品アシスタントです。
ユーザーが売りたい商品の写真を送ってきました。
この画像を分析し、出品に必要な情報を抽出してください。

【出力形式 - JSONのみ】
{
  "image_summary": "画像の視覚的な説明（色、形、文字情報、メーカーロゴなど）",
  "extracted_info": {"category": "推定カテゴリ", "product_name": "推定商品名（型番含む）", "features": "特徴"},
  "first_question": "ユーザーに尋ねるべき最初の質問（1つだけ、フレンドリーに）"
}

【質問のコツ】
- まず「これは〇〇ですね！」と特定できたことを伝えて安心させる
- 次に、写真からはわからない最も重要な情報（型番、サイズ、ブランド、購入時期など）を聞く
- 質問は1つに絞る"""

CONTINUE_PRODUCT_PROMPT = """あなたはフリマアプリの出品アシスタントです。
これまでの情報と、ユーザーの最新の回答をもとに、出品情報を更新してください。

【現状の情報】
画像の特徴: {summary}
抽出済み情報: {attributes}
会話履歴: {history}

【ユーザーの回答】
"{reply}"

【タスク】
1. ユーザーの回答から新しい情報（サイズ、状態、購入時期、型番など）を抽出し、extracted_infoを更新してください。
2. 出品文を作成するのに十分な情報が集まったか判定してください (is_sufficient)。
   - 必須: 商品名、カテゴリ、状態の大まかな把握
3. falseの場合: 次に聞くべき質問 (next_question) を生成してください。
4. trueの場合: 出品文情報 (listing) を生成してください。

【出力形式 - JSONのみ】
{{"extracted_info": {{}}, "is_sufficient": false, "next_question": "...", "listing": {{"title": "...", "description": "...", "category": "...", "condition": "..."}}}}"""


def _call_llm(
    stage: str,
    prompt: str,
    image: Optional[ImageInput] = None,
    temperature: float = 0.4,
) -> Optional[Any]:
    llm = get_llm_provider()
    images = [ImagePart(data=image.data, mime_type=image.mime_type)] if image else None

    llm_start = time.monotonic()
    try:
        response = llm.generate(
            prompt,
            images=images,
            temperature=temperature,
            json_output=True,
            timeout_seconds=DIALOGUE_TIMEOUT_SECONDS,
        )
    except httpx.TimeoutException as e:
        log_timing(logger, stage, (time.monotonic() - llm_start) * 1000, timeout=True)
        logger.warning(f"{stage} timeout after {DIALOGUE_TIMEOUT_SECONDS}s: {e}")
        return None
    except (GeminiError, httpx.HTTPError, ValueError) as e:
        logger.warning(f"{stage} failed: {e}")
        return None

    log_timing(logger, stage, (time.monotonic() - llm_start) * 1000, model_name=response.model)
    return parse_json_response(response.content)


def _parse_media_candidate(raw: Any) -> Optional[MediaCandidate]:
    if not isinstance(raw, dict) or not raw.get("title"):
        return None
    try:
        return MediaCandidate.model_validate({k: v for k, v in raw.items() if k != "kind"})
    except ValidationError as e:
        logger.warning(f"Discarding malformed media candidate: {e.error_count()} errors")
        return None


def parse_media_opening(parsed: Any) -> Optional[FollowUp]:
    if not isinstance(parsed, dict):
        return None
    return FollowUp(
        visual_summary=parsed.get("visual_clues") or DEFAULT_VISUAL_SUMMARY,
        question=parsed.get("question") or DEFAULT_MEDIA_QUESTION,
        candidate=_parse_media_candidate(parsed.get("media_candidate")),
    )


def parse_media_step(parsed: Any, visual_summary: str) -> Optional[IdentificationStep]:
    """Map the continuation JSON onto Finalized / FollowUp, or None if it fits neither."""
    if not isinstance(parsed, dict):
        return None

    if parsed.get("identified"):
        candidate = _parse_media_candidate(parsed.get("data"))
        if candidate is None:
            return None
        return Finalized(candidate=candidate)

    question = parsed.get("question")
    if not question:
        return None
    return FollowUp(
        visual_summary=parsed.get("visual_clues") or visual_summary,
        question=question,
        candidate=_parse_media_candidate(parsed.get("media_candidate")),
    )


def start_media_identification(image: ImageInput) -> Optional[FollowUp]:
    """Open a media guessing dialogue: visual summary, first question, hidden guess."""
    parsed = _call_llm("identify_media_ms", START_MEDIA_PROMPT, image=image, temperature=0.3)
    return parse_media_opening(parsed)


def continue_media_identification(
    visual_summary: str,
    history: list[dict],
    reply: str,
    candidate: Optional[MediaCandidate] = None,
    rejected_titles: Optional[list[str]] = None,
) -> Optional[IdentificationStep]:
    if candidate:
        candidate_info = f"AIの現在の推測: {json.dumps(candidate.model_dump(exclude_none=True), ensure_ascii=False)}"
    else:
        candidate_info = "AIの推測: なし（まだ候補が絞れていない）"
    rejected_info = f"ユーザーが否定した候補: {json.dumps(rejected_titles, ensure_ascii=False)}" if rejected_titles else ""

    prompt = CONTINUE_MEDIA_PROMPT.format(
        visual_summary=visual_summary,
        candidate_info=candidate_info,
        rejected_info=rejected_info,
        history=format_history(history, MEDIA_HISTORY_TURNS),
        reply=reply,
    )
    parsed = _call_llm("continue_media_ms", prompt, temperature=0.4)
    return parse_media_step(parsed, visual_summary)


def parse_product_opening(parsed: Any) -> Optional[FollowUp]:
    if not isinstance(parsed, dict):
        return None
    attributes = parsed.get("extracted_info")
    return FollowUp(
        visual_summary=parsed.get("image_summary") or "",
        question=parsed.get("first_question") or DEFAULT_PRODUCT_QUESTION,
        candidate=ProductCandidate(attributes=attributes if isinstance(attributes, dict) else {}),
    )


def parse_product_step(parsed: Any, summary: str, attributes: dict) -> Optional[IdentificationStep]:
    if not isinstance(parsed, dict):
        return None

    updates = parsed.get("extracted_info")
    updated = refine_attributes(attributes, updates if isinstance(updates, dict) else {})

    if parsed.get("is_sufficient"):
        listing_raw = parsed.get("listing")
        try:
            listing = Listing.model_validate(listing_raw) if isinstance(listing_raw, dict) else None
        except ValidationError:
            listing = None
        if listing is not None:
            return Finalized(candidate=ProductCandidate(attributes=updated, listing=listing))

    question = parsed.get("next_question")
    if not question:
        return None
    return FollowUp(visual_summary=summary, question=question, candidate=ProductCandidate(attributes=updated))


def refine_attributes(current: dict, updates: dict) -> dict:
    """Explicit merge for the open-ended attribute map: non-empty updates win, nothing is dropped."""
    merged = dict(current or {})
    for key, value in (updates or {}).items():
        if value is None or value == "":
            continue
        merged[key] = value
    return merged


def start_product_identification(image: ImageInput) -> Optional[FollowUp]:
    parsed = _call_llm("analyze_product_ms", START_PRODUCT_PROMPT, image=image, temperature=0.5)
    return parse_product_opening(parsed)


def continue_product_identification(
    summary: str,
    attributes: dict,
    history: list[dict],
    reply: str,
) -> Optional[IdentificationStep]:
    prompt = CONTINUE_PRODUCT_PROMPT.format(
        summary=summary,
        attributes=json.dumps(attributes, ensure_ascii=False),
        history=format_history(history, PRODUCT_HISTORY_TURNS),
        reply=reply,
    )
    parsed = _call_llm("continue_product_ms", prompt, temperature=0.5)
    return parse_product_step(parsed, summary, attributes)
