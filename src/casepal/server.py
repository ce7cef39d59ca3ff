"""
casepal - test-case recommendations grounded in similar code

An MCP server that indexes project files into a similarity index and asks
Gemini for test-case recommendations using the closest matching chunks.
"""

import argparse
import asyncio
import io
import json
import logging
import os
import sys
import threading
import tomllib
from contextlib import asynccontextmanager
from pathlib import Path

from cachetools import TTLCache
from dotenv import load_dotenv
from fastmcp import Context, FastMCP
from google import genai
from google.api_core.exceptions import (
    InternalServerError,
    ResourceExhausted,
    ServiceUnavailable,
)

# OpenTelemetry imports
from opentelemetry import trace, propagate
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from casepal.errors import ConfigError
from casepal.index import DEFAULT_TOP_K, IndexSettings, SimilarityIndex
from casepal.ingest import MAX_FILE_SIZE, FileTracker, index_directory
from casepal.recommend import MODEL_FLASH, recommend_test_case as _recommend

load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger("casepal")

# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

MAX_HISTORY_MESSAGES = 20  # per session, oldest dropped first

# Set by --config; checked before the XDG location
_cli_config_file: Path | None = None


def _config_path() -> Path:
    if _cli_config_file is not None:
        return _cli_config_file
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "casepal" / "config.toml"


def _load_config() -> dict:
    """Load config from --config or $XDG_CONFIG_HOME/casepal/config.toml.

    Returns parsed dict, or empty dict if file doesn't exist.
    Logs a warning on parse errors (non-fatal).
    """
    config_path = _config_path()

    if not config_path.is_file():
        logger.debug("No config file at %s", config_path)
        return {}

    try:
        with open(config_path, "rb") as f:
            config = tomllib.load(f)
        logger.info("Loaded config from %s", config_path)
        return config
    except tomllib.TOMLDecodeError as e:
        logger.warning("Invalid TOML in %s: %s", config_path, e)
        return {}


# ─────────────────────────────────────────────────────────────────────────────
# Server & State
# ─────────────────────────────────────────────────────────────────────────────

async def _stdin_watchdog() -> None:
    """Exit if the MCP client disconnects (stdin fd closed).

    Polls every 5s using os.fstat(), never read(), so no bytes are taken
    from the stdio transport.
    """
    try:
        fd = sys.stdin.fileno()
    except (ValueError, io.UnsupportedOperation):
        logger.warning("stdin has no fileno, watchdog disabled")
        return

    while True:
        await asyncio.sleep(5)
        try:
            os.fstat(fd)
        except OSError:
            logger.info("stdin fd invalid, client disconnected, exiting")
            os._exit(0)


@asynccontextmanager
async def _casepal_lifespan(app):
    """FastMCP lifespan: start/cancel the stdin watchdog."""
    task = asyncio.create_task(_stdin_watchdog())
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


mcp = FastMCP("casepal", lifespan=_casepal_lifespan)
histories: TTLCache = TTLCache(maxsize=100, ttl=3600)  # session_id -> list of messages
histories_lock = threading.Lock()
_tracker = FileTracker()
_index: SimilarityIndex | None = None
_index_lock = threading.Lock()


def get_index() -> SimilarityIndex:
    """The process-wide similarity index, built on first use."""
    global _index
    with _index_lock:
        if _index is None:
            _index = SimilarityIndex(IndexSettings.load(_load_config()))
        return _index


# ─────────────────────────────────────────────────────────────────────────────
# Client Management
# ─────────────────────────────────────────────────────────────────────────────

# Default key file locations (checked in order)
DEFAULT_KEY_FILES = [
    Path.home() / ".config" / "casepal" / "api_key",
    Path.home() / ".gemini-api-key",
]

# Set by --api-key-file CLI arg; checked first by _load_api_key()
_cli_key_file: Path | None = None


def _load_api_key() -> str | None:
    """Load the Gemini API key from a key file or the environment."""
    if _cli_key_file is not None:
        try:
            api_key = _cli_key_file.read_text().strip()
            if api_key:
                logger.info("Loaded API key from %s (--api-key-file)", _cli_key_file)
                return api_key
        except OSError as e:
            logger.warning("Could not read --api-key-file %s: %s", _cli_key_file, e)

    api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
    if api_key:
        return api_key

    for key_file in DEFAULT_KEY_FILES:
        if key_file.exists():
            try:
                api_key = key_file.read_text().strip()
                if api_key:
                    logger.info("Loaded API key from %s", key_file)
                    return api_key
            except OSError as e:
                logger.warning("Could not read %s: %s", key_file, e)

    return None


def get_client() -> genai.Client:
    """Create a Gemini API client from environment or key file."""
    api_key = _load_api_key()
    if not api_key:
        raise ValueError(
            "Gemini API key not found. Set GEMINI_API_KEY environment variable "
            f"or create {DEFAULT_KEY_FILES[0]}"
        )
    return genai.Client(api_key=api_key)


def _history(session_id: str) -> list[dict]:
    with histories_lock:
        if session_id not in histories:
            histories[session_id] = []
        return histories[session_id]


# ─────────────────────────────────────────────────────────────────────────────
# MCP Resources
# ─────────────────────────────────────────────────────────────────────────────


@mcp.resource("casepal://info")
def get_server_info() -> str:
    """Server version and index configuration."""
    from casepal import __version__

    settings = get_index().settings
    return json.dumps({
        "name": "casepal",
        "version": __version__,
        "model": MODEL_FLASH,
        "chunk_size": settings.chunk_size,
        "dimension": settings.dimension,
        "scoring": settings.scoring,
        "dedupe_by_file": settings.dedupe_by_file,
        "remote_configured": bool(settings.api_key),
        "max_file_size": MAX_FILE_SIZE,
    }, indent=2)


@mcp.resource("casepal://index/stats")
async def get_index_stats() -> str:
    """Backend state and chunk counts of the similarity index."""
    return json.dumps(await get_index().stats(), indent=2)


# ─────────────────────────────────────────────────────────────────────────────
# MCP Tools (Exposed)
# ─────────────────────────────────────────────────────────────────────────────


async def index_file(file_id: str, content: str, file_path: str | None = None) -> str:
    """
    Add a file's content to the similarity index.

    Re-indexing a file adds its new chunks; earlier chunks stay until
    clear_index is called.
    """
    try:
        count = await get_index().add_to_index(file_id, content, file_path)
        _tracker.mark(file_id, content)
        return f"Indexed {file_id}: {count} chunks."
    except Exception as e:
        return f"Error: {e}"

mcp.tool(index_file)


async def index_project(path: str = ".", max_files: int | None = None, ctx: Context | None = None) -> str:
    """Index every changed, non-ignored file under a project directory."""
    root = Path(path)
    if not root.is_dir():
        return f"Error: '{path}' is not a directory."
    try:
        if ctx:
            await ctx.info(f"Indexing project {root.resolve()}")
        result = await index_directory(get_index(), root, _tracker, max_files)
        return (
            f"Indexed {result['indexed']} files ({result['chunks']} chunks), "
            f"{result['skipped']} unchanged or unreadable."
        )
    except Exception as e:
        if ctx:
            await ctx.error(f"Project indexing failed: {e}")
        return f"Error: {e}"

mcp.tool(index_project)


async def find_similar_code(
    query: str,
    k: int = DEFAULT_TOP_K,
    file_ids: list[str] | None = None,
) -> str:
    """Find indexed code chunks most similar to the query text."""
    tracer = trace.get_tracer("casepal")
    with tracer.start_as_current_span("find_similar_code") as span:
        span.set_attribute("casepal.k", k)
        results = await get_index().find_similar_code(query, k, file_ids)
        span.set_attribute("casepal.results", len(results))

    if not results:
        return "No matches found. Index some files first."
    output = []
    for r in results:
        location = r.file_path or r.file_id
        lines = f":{r.start_line}-{r.end_line}" if r.start_line is not None else ""
        output.append(f"**{location}{lines}** (score: {round(r.similarity, 3)})\n```\n{r.content}\n```\n")
    return "\n".join(output)

mcp.tool(find_similar_code)


async def clear_index() -> str:
    """Remove every indexed chunk, locally and from the remote store."""
    try:
        await get_index().clear()
        _tracker.clear()
        return "Index cleared."
    except Exception as e:
        return f"Error: {e}"

mcp.tool(clear_index)


def project_structure(file_ids: list[str] | None = None) -> str:
    """Folder tree of known files and the resolved imports of the given files."""
    rendered = get_index().get_folder_structure(file_ids)
    return rendered or "No project structure recorded yet."

mcp.tool(project_structure)


async def reconnect_backend() -> str:
    """Retry the remote vector store handshake."""
    state = await get_index().reconnect()
    return f"Backend state: {state.value}"

mcp.tool(reconnect_backend)


@mcp.tool(timeout=120)
async def recommend_test_case(
    prompt: str,
    file_ids: list[str] | None = None,
    session_id: str = "default",
    model: str = MODEL_FLASH,
    include_debug: bool = False,
) -> str:
    """
    Ask Gemini for one test case, grounded with similar code from the selected files.

    Args:
        prompt: What to test, in plain language.
        file_ids: Indexed files to draw context from.
        session_id: Conversation to continue; earlier turns are sent along.
        model: Gemini model ID.
        include_debug: Append a JSON summary of what went into the prompt.
    """
    history = _history(session_id)
    try:
        rec = await _recommend(
            get_client(), get_index(), prompt, file_ids, list(history), model
        )
    except (ServiceUnavailable, ResourceExhausted, InternalServerError) as e:
        return f"Error: Service temporarily unavailable after retries: {e}"
    except Exception as e:
        return f"Error: {e}"

    with histories_lock:
        history.append({"role": "user", "content": prompt})
        history.append({"role": "assistant", "content": rec.content})
        del history[:-MAX_HISTORY_MESSAGES]

    if include_debug:
        return f"{rec.content}\n\n---\nDebug: {json.dumps(rec.debug)}"
    return rec.content


def setup_otel(endpoint: str | None = None) -> None:
    """Configure OpenTelemetry for OTLP export using standard variables."""
    # Priority: 1. CLI Arg, 2. CASEPAL specific ENV, 3. Standard OTel ENV
    if not endpoint:
        endpoint = os.getenv("CASEPAL_OTEL_ENDPOINT") or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        return

    service_name = os.getenv("OTEL_SERVICE_NAME", "casepal")

    logger.info("Configuring OpenTelemetry OTLP export for '%s' to %s", service_name, endpoint)
    resource = Resource(attributes={"service.name": service_name})
    provider = TracerProvider(resource=resource)

    processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)

    propagate.set_global_textmap(TraceContextTextMapPropagator())


def main() -> None:
    global _cli_key_file, _cli_config_file
    parser = argparse.ArgumentParser(description="casepal - test-case recommendations grounded in similar code")
    parser.add_argument("--otel-endpoint", help="OTLP gRPC endpoint (e.g., localhost:4317)")
    parser.add_argument(
        "--api-key-file",
        type=Path,
        help="Path to file containing the Gemini API key",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a config.toml (default: $XDG_CONFIG_HOME/casepal/config.toml)",
    )
    args, _ = parser.parse_known_args()

    if args.api_key_file:
        _cli_key_file = args.api_key_file
    if args.config:
        _cli_config_file = args.config

    try:
        index = get_index()
    except ConfigError as e:
        parser.error(f"invalid configuration: {e}")
    logger.info(
        "Index: chunk_size=%d dimension=%d scoring=%s dedupe_by_file=%s remote=%s",
        index.settings.chunk_size, index.settings.dimension, index.settings.scoring,
        index.settings.dedupe_by_file, "configured" if index.remote else "none",
    )

    setup_otel(args.otel_endpoint)
    mcp.run()

if __name__ == "__main__":
    main()
