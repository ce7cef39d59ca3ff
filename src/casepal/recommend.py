"""
Test-case recommendations from Gemini, grounded with similar code.
"""

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from google import genai
from google.api_core.exceptions import (
    InternalServerError,
    ResourceExhausted,
    ServiceUnavailable,
)
from google.genai import types
from opentelemetry import trace
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from casepal.index import SimilarCode, SimilarityIndex

logger = logging.getLogger(__name__)

MODEL_FLASH = "gemini-3-flash-preview"
MAX_SIMILAR_CHUNKS = 3
MAX_OUTPUT_TOKENS = 1000
TEMPERATURE = 0.7

GEMINI_RETRY_DECORATOR = retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=2, min=2, max=60),
    retry=retry_if_exception_type(
        (ServiceUnavailable, ResourceExhausted, InternalServerError)
    ),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)

TDD_INSTRUCTION = """\
You are a Test-Driven Development expert. Help users write high-quality test cases.

IMPORTANT INSTRUCTIONS:
1. Provide ONLY ONE test case at a time
2. NEVER include any code snippets in your responses
3. Structure your responses strictly in this format:

Test Description:
[Describe what aspect of the code this test case will verify]

Example/Expected Results:
[Describe the inputs and expected outputs or behavior in plain English]

Explanation:
[Explain the reasoning behind this test case and why it's important]
"""


@dataclass
class Recommendation:
    """Model reply plus what was fed into the prompt."""

    content: str
    files_analyzed: list[str] = field(default_factory=list)
    has_code_context: bool = False
    has_folder_structure: bool = False

    @property
    def debug(self) -> dict:
        return {
            "files_analyzed": self.files_analyzed,
            "has_code_context": self.has_code_context,
            "has_folder_structure": self.has_folder_structure,
        }


def format_code_context(results: Iterable[SimilarCode], names: Mapping[str, str]) -> str:
    """Render similar chunks as 'File / Similarity / Content' blocks."""
    blocks = []
    for r in results:
        name = names.get(r.file_id) or r.file_path or "Unknown"
        blocks.append(
            f"File: {name}\n"
            f"Similarity: {r.similarity * 100:.1f}%\n"
            f"Content:\n{r.content}\n"
        )
    if not blocks:
        return ""
    return "Selected Files Context:\n\n" + "\n---\n\n".join(blocks)


def build_system_instruction(
    files_analyzed: list[str],
    folder_structure: str = "",
    code_context: str = "",
) -> str:
    selected = "\n".join(files_analyzed) if files_analyzed else "No files selected"
    parts = [TDD_INSTRUCTION, f"Selected Files:\n{selected}\n"]
    if folder_structure:
        parts.append(f"Project Structure:\n{folder_structure}\n")
    if code_context:
        parts.append(f"Relevant Code Context:\n{code_context}")
    return "\n".join(parts)


def _to_contents(history: Iterable[Mapping[str, str]], prompt: str) -> list[types.Content]:
    contents = []
    for message in history:
        role = "model" if message.get("role") in ("assistant", "model") else "user"
        contents.append(types.Content(role=role, parts=[types.Part.from_text(text=message["content"])]))
    contents.append(types.Content(role="user", parts=[types.Part.from_text(text=prompt)]))
    return contents


@GEMINI_RETRY_DECORATOR
def _generate(
    client: genai.Client,
    model: str,
    contents: list[types.Content],
    system_instruction: str,
) -> str:
    response = client.models.generate_content(
        model=model,
        contents=contents,
        config=types.GenerateContentConfig(
            system_instruction=system_instruction,
            temperature=TEMPERATURE,
            max_output_tokens=MAX_OUTPUT_TOKENS,
        ),
    )
    return response.text or ""


async def recommend_test_case(
    client: genai.Client,
    index: SimilarityIndex,
    prompt: str,
    file_ids: list[str] | None = None,
    history: Iterable[Mapping[str, str]] = (),
    model: str = MODEL_FLASH,
) -> Recommendation:
    """
    Ask Gemini for one test case, with similar code from the selected files.

    Retrieval problems are logged and the prompt goes out without context.
    Gemini errors propagate after retries.
    """
    tracer = trace.get_tracer("casepal")
    with tracer.start_as_current_span("recommend_test_case") as span:
        span.set_attribute("casepal.model", model)
        span.set_attribute("casepal.file_count", len(file_ids or []))

        names = dict(index.structure.paths_by_id)
        files_analyzed = [names.get(f, f) for f in file_ids or []]
        folder_structure = ""
        code_context = ""

        if file_ids:
            try:
                folder_structure = index.get_folder_structure(file_ids)
                similar = await index.find_similar_code(prompt, MAX_SIMILAR_CHUNKS, file_ids)
                code_context = format_code_context(similar, names)
            except Exception:
                logger.exception("Error analyzing code for %s", files_analyzed)

        instruction = build_system_instruction(files_analyzed, folder_structure, code_context)
        logger.info("Sending request to Gemini with selected files: %s", files_analyzed)

        loop = asyncio.get_running_loop()
        text = await loop.run_in_executor(
            None, _generate, client, model, _to_contents(history, prompt), instruction
        )

        return Recommendation(
            content=text,
            files_analyzed=files_analyzed,
            has_code_context=bool(code_context),
            has_folder_structure=bool(folder_structure),
        )
