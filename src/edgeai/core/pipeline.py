"""Two-stage image understanding: free-form description, then attribute extraction.

Stage 1 asks the model to describe the image in natural language.  Stage 2
sends a fixed extraction instruction that embeds the Stage 1 description
verbatim (no image attached) and asks for a JSON object over a fixed set of
person attributes.  Only the Stage 2 result reaches the caller.

A Stage 1 timeout still feeds whatever description arrived before the
deadline into Stage 2.  Stage 1 failures (no model, init or generation
error) and timeouts with no text at all end the pipeline with the Stage 1
outcome.

Each stage is a complete inference call with its own session: the model is
cleaned up and re-initialized between stages so that Stage 2 starts from an
empty context.  Both stages run under the model's exclusive lock, so no
other request for the same model can slip in between them.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from PIL import Image

from edgeai.core.errors import InferenceOutcome, OutcomeKind
from edgeai.core.registry import GenerationOverrides
from edgeai.core.service import InferenceService

logger = logging.getLogger(__name__)

ATTRIBUTE_FIELDS: tuple[str, ...] = (
    "gender",
    "face_shape",
    "hair_color",
    "hair_length",
    "hair_style",
    "eye_color",
    "skin_tone",
    "height",
    "build",
    "top_clothing",
    "bottom_clothing",
    "accessories",
    "distinctive_features",
    "age_range",
)

EXTRACTION_TEMPLATE = """\
Below is a description of a person in an image.

Description:
{description}

Extract the person's attributes from the description and answer with a single \
JSON object and nothing else. Use only these keys: {fields}.
Each value must be a short string (use a list of strings for accessories and \
distinctive_features).
Omit any key whose value is uncertain, unknown, "not discernible", "not \
visible", "not mentioned", or null. Do not invent details that the description \
does not state."""

# Values meaning "the model could not tell".
_NULL_LIKE = {
    "",
    "n/a",
    "na",
    "none",
    "null",
    "unknown",
    "uncertain",
    "unclear",
    "not discernible",
    "not visible",
    "not mentioned",
    "not specified",
    "not applicable",
    "not determinable",
    "cannot be determined",
}

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of the pipeline plus the intermediate description."""

    outcome: InferenceOutcome
    description: str | None = None


def build_extraction_prompt(description: str) -> str:
    """Return the Stage 2 instruction with ``description`` embedded verbatim."""
    return EXTRACTION_TEMPLATE.format(
        description=description,
        fields=", ".join(ATTRIBUTE_FIELDS),
    )


def _is_null_like(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().strip(".").lower() in _NULL_LIKE
    if isinstance(value, (list, tuple)):
        return all(_is_null_like(item) for item in value)
    return False


def _find_json_object(text: str) -> dict | None:
    candidates = [match.group(1) for match in _FENCE_RE.finditer(text)]
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate.strip())
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def normalize_attributes(text: str) -> str:
    """Clean up the Stage 2 reply.

    When the reply contains a JSON object (bare or inside a Markdown code
    fence), keep the known attribute keys in their canonical order, drop
    null-like values and re-serialize it.  Otherwise return ``text`` as is.
    """
    parsed = _find_json_object(text)
    if parsed is None:
        logger.debug("Extraction reply is not JSON; returning raw text.")
        return text

    attributes = {}
    for key in ATTRIBUTE_FIELDS:
        value = parsed.get(key)
        if _is_null_like(value):
            continue
        if isinstance(value, list):
            value = [item for item in value if not _is_null_like(item)]
        attributes[key] = value
    return json.dumps(attributes, ensure_ascii=False)


class AttributeExtractionPipeline:
    """Runs the description and extraction stages through an :class:`InferenceService`."""

    def __init__(self, service: InferenceService, default_prompt: str) -> None:
        self.service = service
        self.default_prompt = default_prompt

    def run(
        self,
        image: Image.Image,
        prompt: str | None = None,
        model_name: str | None = None,
        overrides: GenerationOverrides | None = None,
    ) -> PipelineResult:
        """Describe ``image`` and extract structured attributes from the description.

        Args:
            image: Decoded input image, attached to Stage 1 only.
            prompt: Stage 1 prompt; the configured default when empty.
            model_name: Requested model, or ``None`` for the default LLM.
            overrides: Generation overrides applied to both stages.

        Returns:
            The Stage 2 outcome (normalized), or the Stage 1 outcome when the
            description stage failed or timed out without any text.
        """
        descriptor = self.service.resolve_model(model_name)
        if descriptor is None:
            return PipelineResult(InferenceOutcome.model_unavailable())

        stage1_prompt = prompt if prompt and prompt.strip() else self.default_prompt

        with self.service.sessions.exclusive(descriptor.name):
            logger.info("Pipeline stage 1 (description) on model '%s'.", descriptor.name)
            described = self.service.generate_with(descriptor, stage1_prompt, [image], overrides)
            if described.kind is OutcomeKind.TIMEOUT and described.text.strip():
                logger.warning(
                    "Pipeline stage 1 timed out; extracting from the partial description."
                )
            elif not described.ok:
                logger.warning(
                    "Pipeline stage 1 ended with %s; skipping extraction.", described.kind.value
                )
                return PipelineResult(described)

            logger.info("Pipeline stage 2 (extraction) on model '%s'.", descriptor.name)
            extracted = self.service.generate_with(
                descriptor, build_extraction_prompt(described.text), (), overrides
            )

        if extracted.kind is OutcomeKind.OK:
            extracted = InferenceOutcome.success(normalize_attributes(extracted.text))
        return PipelineResult(extracted, description=described.text)
