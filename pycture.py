"""Request gating and LLM plumbing for the Pycture Alteryx-to-Python converter.

Everything here is independent of Streamlit so the app and the proxy share it.
The regex gates (sanitizer, injection detector, disallowed-import scan) are
best-effort heuristics: they reduce prompt-injection risk, they do not remove it.
"""
import io
import json
import logging
import math
import re
import time
import unicodedata
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import requests

logger = logging.getLogger("pycture")

# ================== CONFIG ==================
ALLOWED_EXTENSIONS = (".csv", ".xls", ".xlsx")
MAX_FILE_SIZE = 100 * 1024 * 1024      # 100MB
METADATA_READ_BYTES = 50 * 1024         # only the head of a file is inspected
SAMPLE_ROWS = 3
MAX_REQUIREMENT_CHARS = 5000

RATE_LIMIT = 10                         # requests
RATE_WINDOW_MS = 60_000                 # per trailing minute

MAX_TOKENS = 8192
REQUEST_TIMEOUT = 120                   # seconds

UNKNOWN_ROWS = "(unknown)"
EXCEL_PLACEHOLDER = "(Excel file - columns will be detected when processing)"
READ_ERROR_COLUMN = "(error reading file)"

DOWNLOAD_FILE_NAME = "pycture_script.py"
REQUIRED_FIELDS = ("script", "steps", "input_files", "output_files")
LIST_FIELDS = ("steps", "input_files", "output_files")
DISALLOWED_MODULES = ("os", "subprocess", "sys", "eval", "exec", "__import__", "pickle", "shelve")


class Provider(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"


# ================== ERRORS ==================
class PyctureError(Exception):
    """Base error; `user_message` is safe to show in the UI."""

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or message


class InvalidFileError(PyctureError):
    pass


class FileReadError(PyctureError):
    pass


class InvalidInputError(PyctureError):
    pass


class RateLimitExceededError(PyctureError):
    def __init__(self, wait_seconds: int):
        super().__init__(f"Rate limit exceeded. Please wait {wait_seconds} seconds before trying again.")
        self.wait_seconds = wait_seconds


class UpstreamError(PyctureError):
    """Provider/proxy failure. `status` is None for connectivity problems."""

    def __init__(self, message: str, user_message: str, status: Optional[int] = None):
        super().__init__(message, user_message)
        self.status = status


class ResponseParseError(PyctureError):
    pass


class ResponseShapeError(PyctureError):
    pass


class UnsafeScriptError(PyctureError):
    pass


# ================== FILE VALIDATION ==================
def validate_file(name: str, size: int) -> bool:
    """Accept CSV/Excel files up to 100MB; raise InvalidFileError otherwise."""
    if not (name or "").lower().endswith(ALLOWED_EXTENSIONS):
        raise InvalidFileError(f"Invalid file type: {name}. Only CSV and Excel files are allowed.")
    if size > MAX_FILE_SIZE:
        raise InvalidFileError(f"File too large: {name}. Maximum size is 100MB.")
    return True


# ================== FILE METADATA ==================
@dataclass
class FileMetadata:
    name: str
    size: int
    type: str = ""
    columns: List[str] = field(default_factory=list)
    row_count: Union[int, str] = 0
    sample: List[List[str]] = field(default_factory=list)

    @property
    def size_mb(self) -> str:
        return f"{self.size / 1024 / 1024:.2f}"

    @property
    def row_count_label(self) -> str:
        if isinstance(self.row_count, int):
            return f"{self.row_count:,}"
        return str(self.row_count)


def _clean_field(value: str) -> str:
    return re.sub(r"^[\"']|[\"']$", "", value.strip())


def _split_csv_line(line: str) -> List[str]:
    # Naive split: quoted commas and embedded newlines are not handled.
    return [_clean_field(v) for v in line.split(",")]


def parse_metadata_text(name: str, text: str, size: int = 0, mime: str = "") -> FileMetadata:
    meta = FileMetadata(name=name, size=size, type=mime)
    try:
        lines = [ln for ln in text.split("\n") if ln.strip()]
        if not lines:
            return meta
        if name.lower().endswith(".csv"):
            meta.columns = _split_csv_line(lines[0])
            meta.row_count = len(lines) - 1
            meta.sample = [_split_csv_line(ln) for ln in lines[1:1 + SAMPLE_ROWS]]
        else:
            meta.columns = [EXCEL_PLACEHOLDER]
            meta.row_count = UNKNOWN_ROWS
    except Exception:
        logger.exception("Error extracting metadata from %s", name)
        meta.columns, meta.row_count, meta.sample = [READ_ERROR_COLUMN], 0, []
    return meta


def read_head(upload, limit: int = METADATA_READ_BYTES) -> bytes:
    """Read at most `limit` bytes, leaving seekable uploads rewound for later use."""
    name = getattr(upload, "name", "upload")
    try:
        if hasattr(upload, "seek"):
            upload.seek(0)
        raw = upload.read(limit)
        if hasattr(upload, "seek"):
            upload.seek(0)
    except (OSError, ValueError) as e:
        raise FileReadError(f"Failed to read file: {name}") from e
    return raw[:limit]


def extract_file_metadata(upload) -> FileMetadata:
    name = getattr(upload, "name", "") or ""
    raw = read_head(upload)
    size = getattr(upload, "size", None)
    if size is None:
        size = len(raw)
    text = raw.decode("utf-8", errors="replace")
    return parse_metadata_text(name, text, size=size, mime=getattr(upload, "type", "") or "")


def extract_all_metadata(uploads) -> List[FileMetadata]:
    """Extract metadata for several uploads concurrently, preserving input order."""
    uploads = list(uploads)
    if not uploads:
        return []
    with ThreadPoolExecutor(max_workers=min(8, len(uploads))) as pool:
        return list(pool.map(extract_file_metadata, uploads))


def upload_key(upload):
    """Stable identity for an upload across reruns (Streamlit file_id when present)."""
    return getattr(upload, "file_id", None) or (upload.name, upload.size)


def cached_metadata(uploads, cache: dict) -> List[FileMetadata]:
    """Metadata for `uploads`, reading only files not already in `cache`.

    Entries for files no longer uploaded are dropped from `cache`.
    """
    uploads = list(uploads)
    keys = [upload_key(up) for up in uploads]
    missing = [up for up, key in zip(uploads, keys) if key not in cache]
    for up, meta in zip(missing, extract_all_metadata(missing)):
        cache[upload_key(up)] = meta
    for key in set(cache) - set(keys):
        del cache[key]
    return [cache[key] for key in keys]


# ================== TEXT GATES ==================
def sanitize_input(text: str) -> str:
    """Strip script blocks, javascript: URIs and inline on*= handlers.

    Best-effort only, not an HTML sanitizer; the UI escapes text on its own.
    """
    text = re.sub(r"<script[^>]*>.*?</script>", "", text or "", flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"javascript:", "", text, flags=re.IGNORECASE)
    text = re.sub(r"on\w+\s*=", "", text, flags=re.IGNORECASE)
    return text.strip()


# (pattern, category); matched against the normalized text
INJECTION_PATTERNS = [
    (re.compile(r"ign[o0]re\s*(all\s*)?(previous|prior|above)\s*(instructions?|prompts?|rules?)", re.I), "ignore_instructions"),
    (re.compile(r"(you\s*(are|'re)\s*now|act\s*as|pretend\s*(to\s*be|you\s*are))", re.I), "role_override"),
    (re.compile(r"system\s*(override|prompt|mode|instruction)", re.I), "system_override"),
    (re.compile(r"forget\s*(everything|all|previous|prior)", re.I), "forget_context"),
    (re.compile(r"(new|different|updated)\s*instructions?", re.I), "new_instructions"),
    (re.compile(r"disregard\s*.*(above|prior|previous)", re.I), "disregard_context"),
    (re.compile(r"instead,?\s*(output|generate|create|write)", re.I), "redirect_output"),
    (re.compile(r"(override|bypass|disable)\s*(safety|security|filter)", re.I), "bypass_safety"),
    (re.compile(r"reveal\s*(your\s*)?(prompt|instructions|system)", re.I), "reveal_prompt"),
]

# (pattern, category); matched against the raw text
CODE_INJECTION_PATTERNS = [
    (re.compile(r"import\s+(os|subprocess|sys|eval|exec)", re.I), "dangerous_import"),
    (re.compile(r"__import__", re.I), "dunder_import"),
    (re.compile(r"exec\s*\(", re.I), "exec_call"),
    (re.compile(r"eval\s*\(", re.I), "eval_call"),
]

_HTML_SPACES = re.compile(r"&nbsp;|&#160;|&#x0*a0;", re.I)
_ZERO_WIDTH = re.compile("[\u200b-\u200d\ufeff]")


def normalize_for_detection(text: str) -> str:
    text = unicodedata.normalize("NFKD", text)
    text = _HTML_SPACES.sub(" ", text)
    text = _ZERO_WIDTH.sub("", text)
    return text.lower()


def find_injection_categories(text: str) -> List[str]:
    normalized = normalize_for_detection(text)
    hits = [cat for pattern, cat in INJECTION_PATTERNS if pattern.search(normalized)]
    hits += [cat for pattern, cat in CODE_INJECTION_PATTERNS if pattern.search(text)]
    return hits


def detect_prompt_injection(text: str) -> bool:
    return bool(find_injection_categories(text))


# ================== RATE LIMIT ==================
@dataclass
class RateWindow:
    """Per-session request timestamps (ms since epoch)."""
    timestamps: List[int] = field(default_factory=list)
    limit: int = RATE_LIMIT
    window_ms: int = RATE_WINDOW_MS


def now_ms() -> int:
    return int(time.time() * 1000)


def check_rate_limit(window: RateWindow, now: Optional[int] = None) -> None:
    """Record a request in `window` or raise RateLimitExceededError.

    Client-side throttling only; anyone can bypass it, so a deployment that
    needs real protection must enforce limits server-side as well.
    """
    now = now_ms() if now is None else now
    recent = [t for t in window.timestamps if now - t < window.window_ms]
    if len(recent) >= window.limit:
        wait = math.ceil((window.window_ms - (now - min(recent))) / 1000)
        window.timestamps = recent
        raise RateLimitExceededError(wait)
    window.timestamps = recent + [now]


# ================== PROMPT ==================
ALTERYX_KNOWLEDGE = """# ALTERYX TO PYTHON CONVERSION GUIDE

You are an expert at converting Alteryx workflows to Python pandas code.

## CORE PRINCIPLES
1. Use pandas as primary library
2. Write clean, well-commented code
3. Include error handling
4. Make file paths configurable
5. Add progress print statements
6. **ALWAYS normalize column names after loading: df.columns = df.columns.str.lower().str.strip()**

## COMMON TOOL MAPPINGS

### Input/Output
- Input Data → pd.read_csv() or pd.read_excel()
- Output Data → df.to_csv() or df.to_excel()

### Preparation
- Filter → df[condition]
- Select → df[['col1', 'col2']]
- Sort → df.sort_values()
- Sample → df.head() or df.sample()
- Unique → df.drop_duplicates()

### Join/Union
- Join → pd.merge(df1, df2, on='key')
- Union → pd.concat([df1, df2])

### Transform
- Formula → df['new'] = calculation
- Summarize → df.groupby().agg()
- Cross Tab → pd.pivot_table()

### Data Cleansing
- Data Cleansing → str.strip(), str.upper(), fillna()
- Imputation → ffill() or fillna(df['col'].mean())

## CODE STRUCTURE

Always include:
1. Imports (pandas, numpy, pathlib)
2. Configuration (file paths as variables)
3. **Column normalization: df.columns = df.columns.str.lower().str.strip()**
4. Error handling (try/except)
5. Progress messages (print statements)
6. Create output directories (Path().mkdir())
"""

TASK_INSTRUCTIONS = """## YOUR TASK

Generate a complete Python script that:
1. Loads the data files mentioned
2. Implements the requested workflow
3. **CRITICAL**: Includes df.columns = df.columns.str.lower().str.strip() after EVERY read_csv/read_excel
4. Saves the output appropriately

Also provide:
- A step-by-step explanation with code snippets
- List of input files needed
- List of output files that will be created

CRITICAL: You must respond with ONLY valid JSON. No explanatory text before or after. No markdown code blocks. Just pure JSON.

Use this exact format:
{
  "script": "complete Python code here",
  "steps": [
    {"description": "Load Superstore CSV", "code": "df = pd.read_csv('Superstore.csv')"},
    {"description": "Filter for South Region", "code": "df = df[df['region'] == 'South']"},
    {"description": "Group by subcategory and sum sales", "code": "df.groupby('subcategory')['sales'].sum()"},
    {"description": "Save results to CSV", "code": "df.to_csv('results.csv', index=False)"}
  ],
  "input_files": ["file1.csv", "file2.xlsx"],
  "output_files": ["output.xlsx"]
}

Start your response with { and end with }. Nothing else."""


def render_file_block(files: List[FileMetadata], include_samples: bool = False) -> str:
    if not files:
        return "None"
    blocks = []
    for idx, meta in enumerate(files, start=1):
        lines = [
            f"File {idx}: {meta.name}",
            f"  - Size: {meta.size_mb} MB",
            f"  - Columns: {', '.join(meta.columns)}",
            f"  - Approximate Rows: {meta.row_count_label}",
        ]
        if include_samples and meta.sample:
            lines.append("  - Sample Rows:")
            lines += [f"      {', '.join(row)}" for row in meta.sample]
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def build_prompt(requirement: str, files: List[FileMetadata], include_samples: bool = False) -> str:
    return (
        ALTERYX_KNOWLEDGE
        + "\n## USER REQUEST\n\nFiles uploaded:\n" + render_file_block(files, include_samples)
        + "\n\nUser requirement: " + requirement
        + "\n\n" + TASK_INSTRUCTIONS
    )


# ================== PROVIDERS ==================
def _anthropic_headers(api_key: str) -> Dict[str, str]:
    return {"x-api-key": api_key, "anthropic-version": "2023-06-01", "content-type": "application/json"}


def _openai_headers(api_key: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {api_key}", "content-type": "application/json"}


def _anthropic_text(payload: dict) -> str:
    blocks = payload["content"]
    texts = [b["text"] for b in blocks if b.get("type", "text") == "text"]
    if not texts:
        raise KeyError("text")
    return "".join(texts)


def _openai_text(payload: dict) -> str:
    return payload["choices"][0]["message"]["content"]


@dataclass(frozen=True)
class ProviderSpec:
    label: str
    url: str
    model: str
    key_prefix: str
    headers: Any
    extract_text: Any
    console_url: str


PROVIDERS = {
    Provider.ANTHROPIC: ProviderSpec(
        label="Anthropic",
        url="https://api.anthropic.com/v1/messages",
        model="claude-sonnet-4-5-20250929",
        key_prefix="sk-ant-",
        headers=_anthropic_headers,
        extract_text=_anthropic_text,
        console_url="console.anthropic.com",
    ),
    Provider.OPENAI: ProviderSpec(
        label="OpenAI",
        url="https://api.openai.com/v1/chat/completions",
        model="gpt-4o",
        key_prefix="sk-",
        headers=_openai_headers,
        extract_text=_openai_text,
        console_url="platform.openai.com",
    ),
}


def normalize_response(provider: Provider, payload: Any) -> str:
    """Reduce a provider-specific response body to the completion text."""
    spec = PROVIDERS[Provider(provider)]
    try:
        text = spec.extract_text(payload)
    except (KeyError, IndexError, TypeError, AttributeError) as e:
        logger.error("Unexpected %s response shape: %s", spec.label, json.dumps(payload)[:2000])
        raise UpstreamError(
            f"Unexpected {spec.label} response shape",
            "The AI service returned an unexpected response. Please try again.",
        ) from e
    if not isinstance(text, str):
        raise UpstreamError(
            f"Non-text {spec.label} completion",
            "The AI service returned an unexpected response. Please try again.",
        )
    return text


def classify_upstream_error(status: Optional[int], provider: Provider = Provider.ANTHROPIC) -> str:
    spec = PROVIDERS[Provider(provider)]
    if status is None:
        return (
            f"Network error: Could not connect to the {spec.label} API. Please check: "
            "(1) Your internet connection, (2) Your API key is valid, (3) Try again in a moment. "
            "If the problem persists, your network may be blocking API requests."
        )
    if status == 401:
        return f"Invalid API key. Please check your API key at {spec.console_url}"
    if status == 429:
        return "Rate limit exceeded. Please wait a moment and try again."
    if status == 400:
        return "Invalid request. Please check your input."
    if status >= 500:
        return "API error. Please try again later."
    return f"API error: {status}"


def request_body(provider: Provider, prompt: str) -> Dict[str, Any]:
    spec = PROVIDERS[Provider(provider)]
    return {
        "model": spec.model,
        "max_tokens": MAX_TOKENS,
        "messages": [{"role": "user", "content": prompt}],
    }


def _post(url: str, provider: Provider, **kwargs) -> requests.Response:
    try:
        return requests.post(url, timeout=REQUEST_TIMEOUT, **kwargs)
    except requests.RequestException as e:
        logger.error("Request to %s failed: %s", url, e)
        raise UpstreamError(f"Connection to {url} failed: {e}", classify_upstream_error(None, provider)) from e


def _raise_for_upstream(resp: requests.Response, provider: Provider) -> None:
    if resp.ok:
        return
    logger.error("Upstream error %s: %s", resp.status_code, resp.text[:2000])
    raise UpstreamError(
        f"API error: {resp.status_code}",
        classify_upstream_error(resp.status_code, provider),
        status=resp.status_code,
    )


def _json_body(resp: requests.Response, provider: Provider) -> Any:
    try:
        return resp.json()
    except ValueError as e:
        logger.error("Non-JSON response body: %s", resp.text[:2000])
        raise UpstreamError(
            "Non-JSON response body",
            "The AI service returned an unexpected response. Please try again.",
        ) from e


def call_provider(provider: Provider, api_key: str, prompt: str) -> str:
    """POST the prompt straight to the provider and return the completion text."""
    provider = Provider(provider)
    spec = PROVIDERS[provider]
    resp = _post(spec.url, provider, headers=spec.headers(api_key), json=request_body(provider, prompt))
    _raise_for_upstream(resp, provider)
    return normalize_response(provider, _json_body(resp, provider))


def call_proxy(proxy_url: str, provider: Provider, api_key: str, prompt: str) -> str:
    """Same as call_provider but routed through a Pycture proxy, which normalizes server-side."""
    provider = Provider(provider)
    resp = _post(
        proxy_url,
        provider,
        headers={"content-type": "application/json"},
        json={"apiKey": api_key, "prompt": prompt, "provider": provider.value},
    )
    _raise_for_upstream(resp, provider)
    data = _json_body(resp, provider)
    content = data.get("content") if isinstance(data, dict) else None
    if not isinstance(content, str):
        raise UpstreamError(
            "Proxy response missing content",
            "The AI service returned an unexpected response. Please try again.",
        )
    return content


# ================== RESPONSE VALIDATION ==================
@dataclass
class Step:
    description: str
    code: str


@dataclass
class GenerationResult:
    script: str
    steps: List[Step]
    input_files: List[str]
    output_files: List[str]


PARSE_USER_MESSAGE = (
    "Could not read a valid script from the AI response. Please try rephrasing your "
    "request. Details were written to the application log."
)


def _remove_md_fences(text: str) -> str:
    if text.strip().startswith("```"):
        lines = [ln for ln in text.splitlines() if not ln.strip().startswith("```")]
        return "\n".join(lines).strip()
    return text.strip()


def parse_generation_content(content: str) -> Any:
    """Parse model output as JSON, falling back to the outermost {...} span."""
    text = _remove_md_fences(content or "")
    try:
        return json.loads(text)
    except ValueError:
        pass
    match = re.search(r"\{[\s\S]*\}", text)
    if match:
        try:
            return json.loads(match.group(0))
        except ValueError as e:
            logger.error("Failed to parse model response: %s\nRaw content:\n%s", e, content)
            raise ResponseParseError(f"Failed to parse model response: {e}", PARSE_USER_MESSAGE) from e
    logger.error("No JSON found in model response. Raw content:\n%s", content)
    raise ResponseParseError("No JSON found in model response", PARSE_USER_MESSAGE)


def find_disallowed_imports(script: str) -> List[str]:
    return [
        mod for mod in DISALLOWED_MODULES
        if re.search(rf"import\s+{re.escape(mod)}|from\s+{re.escape(mod)}", script, re.IGNORECASE)
    ]


def _as_steps(raw: Any) -> List[Step]:
    steps = []
    for item in raw:
        if isinstance(item, dict):
            steps.append(Step(str(item.get("description", "")), str(item.get("code", ""))))
        else:
            steps.append(Step(str(item), ""))
    return steps


def validate_generation_result(data: Any) -> GenerationResult:
    if not isinstance(data, dict):
        raise ResponseShapeError(
            "Model response is not a JSON object",
            "The AI response was incomplete. Please try again.",
        )
    for name in REQUIRED_FIELDS:
        if name not in data:
            raise ResponseShapeError(
                f"Missing required field: {name}",
                f"The AI response was incomplete (missing required field: {name}). Please try again.",
            )
    for name in LIST_FIELDS:
        if not isinstance(data[name], list):
            raise ResponseShapeError(
                f"Field {name} must be a list, got {type(data[name]).__name__}",
                f"The AI response was malformed (field {name} is not a list). Please try again.",
            )

    script = data["script"] if isinstance(data["script"], str) else str(data["script"] or "")
    blocked = find_disallowed_imports(script)
    if blocked:
        logger.warning("Rejected generated script importing %s", ", ".join(blocked))
        raise UnsafeScriptError(
            "AI generated code with unauthorized imports. This may be a prompt injection attempt. "
            "Please try describing your workflow differently."
        )
    return GenerationResult(
        script=script,
        steps=_as_steps(data["steps"]),
        input_files=[str(f) for f in data["input_files"]],
        output_files=[str(f) for f in data["output_files"]],
    )


# ================== PIPELINE ==================
@dataclass
class GenerationRequest:
    api_key: str
    provider: Provider
    requirement: str
    files: List[FileMetadata] = field(default_factory=list)
    include_samples: bool = False


def validate_api_key(api_key: str, provider: Provider) -> str:
    api_key = (api_key or "").strip()
    if not api_key:
        raise InvalidInputError("Please enter your API key")
    spec = PROVIDERS[Provider(provider)]
    if not api_key.startswith(spec.key_prefix):
        raise InvalidInputError(f"Invalid {spec.label} API key format. Should start with {spec.key_prefix}")
    return api_key


def validate_requirement(requirement: str) -> str:
    cleaned = sanitize_input(requirement)
    if not cleaned:
        raise InvalidInputError("Please describe what you want to do")
    if len(cleaned) > MAX_REQUIREMENT_CHARS:
        raise InvalidInputError(f"Description is too long (maximum {MAX_REQUIREMENT_CHARS} characters)")
    categories = find_injection_categories(cleaned)
    if categories:
        logger.warning("Rejected requirement matching injection patterns: %s", ", ".join(categories))
        raise InvalidInputError("Invalid input detected. Please describe your data workflow only.")
    return cleaned


def generate_script(request: GenerationRequest, window: RateWindow,
                    proxy_url: Optional[str] = None, now: Optional[int] = None) -> GenerationResult:
    """Run every local gate, call the model once and return a validated result."""
    provider = Provider(request.provider)
    api_key = validate_api_key(request.api_key, provider)
    requirement = validate_requirement(request.requirement)
    check_rate_limit(window, now)

    prompt = build_prompt(requirement, request.files, request.include_samples)
    logger.info("Requesting script from %s (%d files, %d prompt chars)",
                provider.value, len(request.files), len(prompt))
    if proxy_url:
        content = call_proxy(proxy_url, provider, api_key, prompt)
    else:
        content = call_provider(provider, api_key, prompt)
    return validate_generation_result(parse_generation_content(content))


def script_download(result: GenerationResult) -> io.BytesIO:
    if not result.script:
        raise PyctureError("No script to download")
    return io.BytesIO(result.script.encode("utf-8"))
