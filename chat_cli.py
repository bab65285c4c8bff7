import os
import sys
import logging
import argparse
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

# ----------------- Defaults (override via environment variables) -----------------
DEFAULT_API_URL = "http://localhost:8000"
DEFAULT_MODEL = "ibm-granite/granite-3.2-8b-instruct"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
DEFAULT_TEMPERATURE = 0.7
DEFAULT_LOG_LEVEL = "WARNING"

CHAT_COMPLETIONS_PATH = "v1/chat/completions"
NO_CHOICES_MESSAGE = "No choices returned in API response."


# ----------------- Errors -----------------
class ChatCLIError(Exception):
    """Base class for every failure that ends an invocation with exit status 1."""


class MissingInput(ChatCLIError):
    def __init__(self):
        super().__init__("Error: User prompt is required. Provide it via --user flag, pipe, or as a trailing argument.")


class InputReadError(ChatCLIError):
    pass


class SerializationError(ChatCLIError):
    pass


class URLConstructionError(ChatCLIError):
    pass


class TransportError(ChatCLIError):
    pass


class APIError(ChatCLIError):
    def __init__(self, status: int, reason: str, body: str):
        self.status = status
        self.reason = reason
        self.body = body
        status_text = f"{status} {reason}".strip()
        super().__init__(f"Error: API request failed with status {status_text}: {body}")


class DecodeError(ChatCLIError):
    pass


# ----------------- Models -----------------
class Config(BaseModel):
    model_config = ConfigDict(frozen=True)

    api_url: str = DEFAULT_API_URL
    model: str = DEFAULT_MODEL
    api_token: Optional[str] = None


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Wire payload. Fields left at their default are dropped on serialization."""

    model_config = ConfigDict(frozen=True)

    model: str
    messages: List[ChatMessage]
    temperature: float = Field(0.0, allow_inf_nan=False)
    # Always False, so never serialized.
    stream: bool = False


class ReplyMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Optional[str] = None
    content: Optional[str] = None


class Choice(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: Optional[int] = None
    message: Optional[ReplyMessage] = None
    finish_reason: Optional[str] = None
    logprobs: Optional[Any] = None


class Usage(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


class ChatResponse(BaseModel):
    """Decoded reply. A null anywhere is read as an absent value."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    object: Optional[str] = None
    created: Optional[int] = None
    model: Optional[str] = None
    choices: List[Choice] = []
    usage: Optional[Usage] = None

    @field_validator("choices", mode="before")
    @classmethod
    def _null_choices(cls, v):
        if v is None:
            return []
        if isinstance(v, list):
            return [{} if c is None else c for c in v]
        return v


# ----------------- Configuration -----------------
def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Resolve endpoint, model and token from the environment. Empty values count as unset."""
    env = os.environ if environ is None else environ
    return Config(
        api_url=env.get("VLLM_API_URL") or DEFAULT_API_URL,
        model=env.get("VLLM_MODEL") or DEFAULT_MODEL,
        api_token=env.get("VLLM_API_TOKEN") or None,
    )


def configure_logging(environ: Optional[Mapping[str, str]] = None) -> None:
    env = os.environ if environ is None else environ
    level_name = (env.get("VLLM_LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def resolve_user_prompt(
    flag_value: str,
    stdin_available: bool,
    stdin_content: str,
    positional_args: Sequence[str],
) -> str:
    """
    Pick the user prompt, first non-empty source wins:
    --user flag (verbatim), piped stdin (trimmed), trailing arguments (space-joined).
    """
    if flag_value:
        return flag_value
    if stdin_available:
        prompt = (stdin_content or "").strip()
        if prompt:
            return prompt
    if positional_args:
        prompt = " ".join(positional_args)
        if prompt:
            return prompt
    raise MissingInput()


# ----------------- Request -----------------
def chat_completions_url(base_url: str) -> str:
    if not base_url.endswith("/"):
        base_url += "/"
    return base_url + CHAT_COMPLETIONS_PATH


def build_headers(config: Config) -> Dict[str, str]:
    h = {"Content-Type": "application/json"}
    if config.api_token:
        h["Authorization"] = f"Bearer {config.api_token}"
    return h


def build_chat_request(config: Config, system_prompt: str, user_prompt: str, temperature: float) -> ChatRequest:
    return ChatRequest(
        model=config.model,
        messages=[
            ChatMessage(role="system", content=system_prompt),
            ChatMessage(role="user", content=user_prompt),
        ],
        temperature=temperature,
        stream=False,
    )


def _validation_reasons(e: ValidationError) -> str:
    """Flatten a pydantic error into one line: 'loc: msg; loc: msg'."""
    parts = []
    for err in e.errors():
        loc = ".".join(map(str, err["loc"]))
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def request_completion(
    config: Config,
    system_prompt: str,
    user_prompt: str,
    temperature: float = DEFAULT_TEMPERATURE,
) -> Optional[str]:
    """
    POST one chat-completion request and return choices[0].message.content.
    Returns None when the endpoint answered with an empty choices list.
    """
    try:
        chat_request = build_chat_request(config, system_prompt, user_prompt, temperature)
        body = chat_request.model_dump_json(exclude_defaults=True)
    except ValidationError as e:
        raise SerializationError(f"Error marshalling JSON: {_validation_reasons(e)}") from e
    except ValueError as e:
        raise SerializationError(f"Error marshalling JSON: {e}") from e

    url = chat_completions_url(config.api_url)
    logger.debug("POST %s model=%s auth=%s", url, config.model, bool(config.api_token))

    try:
        r = requests.post(url, headers=build_headers(config), data=body.encode("utf-8"))
    except (requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema,
            requests.exceptions.InvalidURL,
            requests.exceptions.URLRequired) as e:
        raise URLConstructionError(f"Error creating request for {url}: {e}") from e
    except (requests.RequestException, UnicodeError) as e:
        # UnicodeError: header values (the token) must be latin-1 encodable.
        raise TransportError(f"Error making request to vLLM API: {e}") from e

    with r:
        logger.debug("Response status %s", r.status_code)
        if r.status_code != 200:
            raise APIError(r.status_code, r.reason or "", r.text)
        try:
            response = ChatResponse.model_validate_json(r.content)
        except ValidationError as e:
            raise DecodeError(f"Error decoding API response: {_validation_reasons(e)}") from e

    if not response.choices:
        return None
    message = response.choices[0].message
    return (message.content if message else None) or ""


# ----------------- CLI -----------------
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="vllm-chat",
        description="Send a prompt to an OpenAI-compatible chat-completion endpoint and print the reply.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--system", default=DEFAULT_SYSTEM_PROMPT, help="System prompt for the LLM")
    p.add_argument("--user", default="", help="User prompt for the LLM (overrides stdin)")
    p.add_argument("--temperature", type=float, default=DEFAULT_TEMPERATURE,
                   help="Temperature for generation (e.g. 0.2 for more deterministic, 1.0 for more random)")
    # Everything from the first positional on is prompt text, including words like "-v".
    p.add_argument("prompt", nargs=argparse.REMAINDER,
                   help="User prompt words, used when neither --user nor stdin supply one")
    return p


def _read_stdin(stdin) -> str:
    """Read all of stdin; undecodable bytes become U+FFFD instead of failing."""
    try:
        buffer = getattr(stdin, "buffer", None)
        if buffer is not None:
            return buffer.read().decode("utf-8", errors="replace")
        return stdin.read()
    except (OSError, UnicodeDecodeError) as e:
        raise InputReadError(f"Error reading from stdin: {e}") from e


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config()

    try:
        stdin_available = False
        stdin_content = ""
        if not args.user:
            stdin_available = not sys.stdin.isatty()
            if stdin_available:
                stdin_content = _read_stdin(sys.stdin)
        user_prompt = resolve_user_prompt(args.user, stdin_available, stdin_content, args.prompt)
        reply = request_completion(config, args.system, user_prompt, args.temperature)
    except MissingInput as e:
        print(e, file=sys.stderr)
        parser.print_usage(sys.stderr)
        return 1
    except ChatCLIError as e:
        print(e, file=sys.stderr)
        return 1

    if reply is None:
        print(NO_CHOICES_MESSAGE, file=sys.stderr)
        return 0

    print(reply)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
