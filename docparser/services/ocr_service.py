# docparser/services/ocr_service.py
from __future__ import annotations

import base64
import logging
import os
import time
from typing import List, Optional, Sequence, Union

from starlette.concurrency import run_in_threadpool

from docparser.schemas.ocr import OcrResult
from docparser.services import prompts
from docparser.services.llm_gateway import CHAT_COMPLETIONS, LlmRequest, image_part, text_part, user_message
from docparser.services.resilient_caller import ResilientCaller
from docparser.services.response_parser import parse_as
from docparser.shared.errors import AppError, OcrFailure, ParseError
from docparser.shared.metrics import MetricsRegistry, metrics

logger = logging.getLogger(__name__)

ImageSource = Union[str, bytes, os.PathLike]


class LowQualityOcr(ParseError):
    default_message = "OCR result rejected by validator"


class OcrValidator:
    def __init__(self, min_confidence: float = 0.1):
        self.min_confidence = min_confidence

    def validate(self, result: OcrResult) -> None:
        if not result.text.strip():
            raise LowQualityOcr("OCR returned empty text")
        if result.confidence < self.min_confidence:
            raise LowQualityOcr(
                f"OCR confidence {result.confidence:.2f} is below threshold {self.min_confidence:.2f}"
            )


def to_data_url(image: bytes, mime: str = "image/jpeg") -> str:
    return f"data:{mime};base64,{base64.b64encode(image).decode('ascii')}"


async def load_image_bytes(image: ImageSource) -> bytes:
    if isinstance(image, bytes):
        return image
    path = os.fspath(image)

    def _read() -> bytes:
        with open(path, "rb") as f:
            return f.read()

    return await run_in_threadpool(_read)


class OcrEngine:
    """
    Image -> text through a vision model. Tries the primary model, then each
    fallback in order; a model is skipped on call failure, unparseable body
    or a result the validator rejects.
    """

    def __init__(
        self,
        caller: ResilientCaller,
        api_key: str,
        model: str,
        fallback_models: Sequence[str] = (),
        validator: Optional[OcrValidator] = None,
        registry: Optional[MetricsRegistry] = None,
    ):
        self._caller = caller
        self._api_key = api_key
        self.models: List[str] = []
        for m in [model, *fallback_models]:
            if m and m not in self.models:
                self.models.append(m)
        self._validator = validator or OcrValidator()
        reg = registry or metrics
        self._requests = reg.counter("ocr_requests_total")
        self._errors = reg.counter("ocr_errors_total")
        self._duration = reg.histogram("ocr_request_duration_seconds")

    async def _image_url(self, image: ImageSource, mime: str) -> str:
        if isinstance(image, str) and image.startswith(("http://", "https://", "data:")):
            return image
        return to_data_url(await load_image_bytes(image), mime)

    async def extract(self, image: ImageSource, mime: str = "image/jpeg") -> OcrResult:
        url = await self._image_url(image, mime)
        last: Optional[BaseException] = None
        for model in self.models:
            try:
                return await self._extract_with_model(model, url)
            except AppError as e:
                last = e
                logger.warning("ocr model %s failed: %s", model, e)
        raise OcrFailure(last)

    async def _extract_with_model(self, model: str, url: str) -> OcrResult:
        request = LlmRequest(
            model=model,
            messages=[user_message([text_part(prompts.ocr_instruction()), image_part(url)])],
        )
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        self._requests.inc(model=model)
        started = time.perf_counter()
        try:
            _, body = await self._caller.call(CHAT_COMPLETIONS, headers=headers, body=request.payload())
            result = parse_as(body, OcrResult)
            self._validator.validate(result)
            return result
        except AppError:
            self._errors.inc(model=model)
            raise
        finally:
            self._duration.observe(time.perf_counter() - started, model=model)
