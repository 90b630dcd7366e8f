# comic_engine.py
import io
import os
import re
import json
import base64
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from PIL import Image, UnidentifiedImageError

# Google AI SDK (text planning, vision and Imagen)
from google import genai
from google.genai import types

# Fal AI SDK for the alternative image backend
import fal_client
import requests

log = logging.getLogger(__name__)

# ------------------ STYLES & CONSTRAINTS ----------

ComicStyle = Literal["anime", "pixel", "ghibli",
                     "retro", "manga", "bw_manga", "custom"]

COMIC_STYLES: List[Dict[str, str]] = [
    {"id": "anime", "name": "Anime"},
    {"id": "pixel", "name": "Pixel Art"},
    {"id": "ghibli", "name": "Ghibli Style"},
    {"id": "retro", "name": "Retro Comic"},
    {"id": "manga", "name": "Manga"},
    {"id": "bw_manga", "name": "Black & White Manga"},
    {"id": "custom", "name": "Custom Style"},
]
STYLE_IDS = [s["id"] for s in COMIC_STYLES]

MAX_PAGES = 10

IMAGE_BACKENDS = ("imagen", "fal")

DEFAULT_CHARACTER_DESCRIPTION = "A character as described in the story."
UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred during comic generation."
EMPTY_STORY_MESSAGE = ("Failed to generate story pages. "
                       "The model returned an empty or invalid structure.")

# ------------------ ENV & CONFIG ------------------


class ComicConfig(BaseModel):
    """Everything the generation client needs, passed in explicitly."""

    model_config = ConfigDict(frozen=True)

    api_key: str
    fal_api_key: Optional[str] = None
    # text planning
    planning_model: str = "gemini-2.5-flash"
    # character description from the reference image
    vision_model: str = "gemini-2.5-flash"
    image_model: str = "imagen-4.0-generate-001"
    image_backend: Literal["imagen", "fal"] = "imagen"
    fal_image_model: str = "fal-ai/nano-banana"
    page_count: int = Field(default=MAX_PAGES, ge=1)
    aspect_ratio: str = "4:3"
    output_mime_type: str = "image/jpeg"
    print_prompts: bool = False


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_page_count(env: Optional[Mapping[str, str]] = None) -> int:
    """Pages per comic; needs no credentials."""
    env = os.environ if env is None else env
    raw = env.get("PAGE_COUNT", str(MAX_PAGES))
    try:
        count = int(raw)
    except ValueError:
        raise ValueError(f"PAGE_COUNT must be a whole number, got '{raw}'.") from None
    if count < 1:
        raise ValueError(f"PAGE_COUNT must be at least 1, got {count}.")
    return count


def load_config(env: Optional[Mapping[str, str]] = None) -> ComicConfig:
    """Build a ComicConfig from the process environment (and .env)."""
    if env is None:
        load_dotenv()
        env = os.environ

    api_key = env.get("GEMINI_API_KEY")
    if not api_key:
        raise RuntimeError("Missing GEMINI_API_KEY in .env")

    backend = env.get("IMAGE_BACKEND", "imagen").strip().lower()
    if backend not in IMAGE_BACKENDS:
        raise ValueError(
            f"Unknown IMAGE_BACKEND '{backend}'. Expected one of: {', '.join(IMAGE_BACKENDS)}.")

    fal_api_key = env.get("FAL_API_KEY")
    if backend == "fal" and not fal_api_key:
        raise RuntimeError("Missing FAL_API_KEY in .env")

    # Models (override via env if your account uses different names)
    return ComicConfig(
        api_key=api_key,
        fal_api_key=fal_api_key,
        planning_model=env.get("PLANNING_MODEL", "gemini-2.5-flash"),
        vision_model=env.get("VISION_MODEL", "gemini-2.5-flash"),
        image_model=env.get("IMAGE_MODEL", "imagen-4.0-generate-001"),
        image_backend=backend,
        fal_image_model=env.get("FAL_IMAGE_MODEL", "fal-ai/nano-banana"),
        page_count=load_page_count(env),
        aspect_ratio=env.get("ASPECT_RATIO", "4:3"),
        print_prompts=_env_flag(env.get("PRINT_PROMPTS")),
    )

# ------------------ PROMPTS -----------------------


CHARACTER_DESCRIPTION_PROMPT = (
    "Describe the character in this image in detail for an AI image generator. "
    "Focus on key visual features like hair, face, clothing, and style to ensure "
    "consistency across multiple images. Output a concise description in a single paragraph."
)

STORY_PROMPT_TEMPLATE = """\
You are a master storyteller and comic book writer.
Your task is to take a user's story prompt and break it down into a coherent, page-by-page narrative for a {page_count}-page comic book.

Story Prompt: "{story_prompt}"

Character Description: "{character_description}"

Art Style: "{style}"

Instructions:
1.  Create a compelling story arc that spans exactly {page_count} pages.
2.  For each page, write a short narrative text ("pageText").
3.  For each page, create a highly detailed visual prompt ("imagePrompt") for an AI image generator. This prompt must include:
    - The character described above, ensuring their appearance is consistent.
    - The scene's background and setting.
    - The character's action and emotion.
    - The overall art style of "{style}".
4. Ensure the story is coherent and the narrative progresses logically from one page to the next.
"""

# ------------------ DATA MODELS -------------------


class ComicGenerationError(RuntimeError):
    pass


class StoryPlanningError(ComicGenerationError):
    """The story model returned nothing usable."""


class GenerationCancelled(ComicGenerationError):
    pass


class CharacterImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    mime_type: str
    data: bytes

    @classmethod
    def from_upload(cls, raw: bytes, declared_mime: Optional[str] = None) -> "CharacterImage":
        """Verify an uploaded file is an image and detect its MIME type."""
        if not raw:
            raise ValueError("Character image is empty")
        try:
            img = Image.open(io.BytesIO(raw))
            img.verify()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as e:
            raise ValueError(f"Character image could not be read: {e}") from e
        mime = Image.MIME.get(img.format or "") or declared_mime
        return cls(mime_type=mime or "application/octet-stream", data=raw)

    def to_data_uri(self) -> str:
        return to_data_uri(self.data, self.mime_type)


class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    story_prompt: str
    style: ComicStyle = "anime"
    custom_style: str = ""
    character_image: Optional[CharacterImage] = None
    character_description: str = ""

    @model_validator(mode="before")
    @classmethod
    def _one_character_input(cls, data: Any) -> Any:
        # An image takes precedence over a typed description.
        if isinstance(data, dict) and data.get("character_image") is not None \
                and data.get("character_description"):
            data = {**data, "character_description": ""}
        return data

    def with_character_image(self, image: Optional[CharacterImage]) -> "GenerationRequest":
        return self.model_copy(update={"character_image": image, "character_description": ""})

    def with_character_description(self, description: str) -> "GenerationRequest":
        return self.model_copy(update={"character_image": None, "character_description": description})

    @property
    def style_label(self) -> str:
        return style_label(self.style, self.custom_style)


class StoryPage(BaseModel):
    pageText: str = Field(
        description="Narrative text for this comic page. It should describe the scene, action, or dialogue.")
    imagePrompt: str = Field(
        description="A detailed, descriptive prompt for an AI image generator to create the visual for this page. This must be in English.")


class ComicPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    pageNumber: int = Field(ge=1)
    text: str
    imageUrl: str


class ComicDocument(BaseModel):
    """The finished comic: pages 1..N in story order."""

    model_config = ConfigDict(frozen=True)

    pages: Tuple[ComicPage, ...]

    @model_validator(mode="after")
    def _contiguous_numbers(self) -> "ComicDocument":
        if not self.pages:
            raise ValueError("A comic needs at least one page")
        numbers = [p.pageNumber for p in self.pages]
        if numbers != list(range(1, len(self.pages) + 1)):
            raise ValueError(
                f"Page numbers must run 1..{len(self.pages)}, got {numbers}")
        return self

    def __len__(self) -> int:
        return len(self.pages)

    def __iter__(self):
        return iter(self.pages)

    def __getitem__(self, i: int) -> ComicPage:
        return self.pages[i]

    def page(self, number: int) -> Optional[ComicPage]:
        """1-indexed lookup; None when the number is out of range."""
        if 1 <= number <= len(self.pages):
            return self.pages[number - 1]
        return None


ProgressKind = Literal["describing", "story_planning", "image_generating",
                       "assembling", "done", "failed"]


class ProgressEvent(BaseModel):
    kind: ProgressKind
    message: str = ""
    index: Optional[int] = None
    total: Optional[int] = None
    reason: Optional[str] = None

    def to_event(self) -> Dict[str, Any]:
        """Event payload streamed to the browser."""
        if self.kind == "done":
            return {"type": "done", "message": self.message}
        if self.kind == "failed":
            return {"type": "error", "message": self.reason or self.message}
        evt: Dict[str, Any] = {"type": "step",
                               "step": self.kind, "message": self.message}
        if self.index is not None:
            evt.update({"type": "step_progress",
                       "current": self.index, "total": self.total})
        return evt

# ------------------ UTILITIES ---------------------


def style_label(style: str, custom_style: str = "") -> str:
    if style == "custom":
        return custom_style.strip()
    return style.replace("_", " ")


def to_data_uri(img_bytes: bytes, mime: str = "image/jpeg") -> str:
    return f"data:{mime};base64,{base64.b64encode(img_bytes).decode('utf-8')}"


def strip_code_fence(s: str) -> str:
    s = s.strip()
    m = re.match(r"^```[a-zA-Z]*\s*(.*?)\s*```$", s, re.DOTALL)
    return m.group(1) if m else s


def first_json_block(s: str) -> str:
    # Find all potential JSON blocks and return the largest valid one
    starts = [m.start() for m in re.finditer(r"[\{\[]", s)]
    best_chunk = None
    best_size = 0

    for i in starts:
        for j in range(len(s), i+1, -1):
            chunk = s[i:j]
            try:
                json.loads(chunk)
            except ValueError:
                continue
            if len(chunk) > best_size:
                best_chunk = chunk
                best_size = len(chunk)
            break

    if best_chunk:
        return best_chunk
    raise ValueError("No valid JSON in model output")


_STORY_PAGES = TypeAdapter(List[StoryPage])


def coerce_story_pages(payload: Any) -> List[StoryPage]:
    """
    Turn whatever the structured call handed back into StoryPage objects.
    Accepts parsed models, plain dicts, or JSON text (fenced, wrapped in a
    single-key object, or surrounded by chatter).
    """
    if payload is None:
        return []
    if isinstance(payload, str):
        text = strip_code_fence(payload)
        if not text:
            return []
        try:
            payload = json.loads(text)
        except ValueError:
            payload = json.loads(first_json_block(text))
    if isinstance(payload, dict) and len(payload) == 1:
        inner = next(iter(payload.values()))
        if isinstance(inner, list):
            payload = inner
    if not isinstance(payload, list):
        raise ValueError(
            f"Expected a list of pages, got {type(payload).__name__}")
    return _STORY_PAGES.validate_python(
        [p.model_dump() if isinstance(p, BaseModel) else p for p in payload])

# --- Simple prompt logger (log + memory) ---


class PromptLogger:
    def __init__(self, echo: bool = False):
        self.echo = echo
        self.lines: List[str] = []
        self._lock = threading.Lock()

    def log(self, title: str, content: str):
        block = f"\n===== {title} =====\n{content.strip()}\n"
        with self._lock:
            self.lines.append(block)
        if self.echo:
            log.info(block)
        else:
            log.debug(block)

    def dump(self) -> str:
        with self._lock:
            return "".join(self.lines)

# ------------------ GENAI WRAPPER ----------------


class GAIC:
    def __init__(self, config: ComicConfig, client: Optional[genai.Client] = None,
                 fal: Optional[fal_client.SyncClient] = None):
        self.config = config
        self.client = client or genai.Client(api_key=config.api_key)
        self.fal = fal
        if self.fal is None and config.image_backend == "fal":
            self.fal = fal_client.SyncClient(key=config.fal_api_key)

    # Text planning (Gemini 2.5)
    def generate_text(self, prompt: str, model: Optional[str] = None) -> str:
        resp = self.client.models.generate_content(
            model=model or self.config.planning_model, contents=prompt)
        return _response_text(resp)

    def describe_image(self, image: CharacterImage, instruction: str,
                       model: Optional[str] = None) -> str:
        part = types.Part.from_bytes(data=image.data, mime_type=image.mime_type)
        resp = self.client.models.generate_content(
            model=model or self.config.vision_model,
            contents=[part, instruction],
        )
        return _response_text(resp)

    # Structured output generation
    def generate_structured(self, prompt: str, response_schema, model: Optional[str] = None):
        resp = self.client.models.generate_content(
            model=model or self.config.planning_model,
            contents=prompt,
            config={
                "response_mime_type": "application/json",
                "response_schema": response_schema,
            }
        )
        parsed = getattr(resp, "parsed", None)
        if parsed is not None:
            return parsed
        return getattr(resp, "text", None)

    def generate_image(self, prompt: str) -> Tuple[bytes, str]:
        """
        Generate a single image for a page.
        Returns (image bytes, mime type).
        """
        if self.config.image_backend == "fal":
            return self._generate_image_with_fal(prompt)

        resp = self.client.models.generate_images(
            model=self.config.image_model,
            prompt=prompt,
            config=types.GenerateImagesConfig(
                number_of_images=1,
                output_mime_type=self.config.output_mime_type,
                aspect_ratio=self.config.aspect_ratio,
            ),
        )
        generated = getattr(resp, "generated_images", None) or []
        if not generated or not getattr(generated[0].image, "image_bytes", None):
            raise RuntimeError("Image model returned no images")
        return generated[0].image.image_bytes, self.config.output_mime_type

    def _generate_image_with_fal(self, prompt: str) -> Tuple[bytes, str]:
        output_format = self.config.output_mime_type.split("/")[-1]
        result = self.fal.subscribe(
            self.config.fal_image_model,
            arguments={
                "prompt": prompt,
                "num_images": 1,
                "output_format": output_format,
                "aspect_ratio": self.config.aspect_ratio,
            },
            with_logs=True,
        )

        images = result.get("images") or []
        if not images:
            raise RuntimeError("Fal API returned no images")

        response = requests.get(images[0]["url"], timeout=120)
        if response.status_code != 200:
            raise RuntimeError(
                f"Failed to download image from Fal: {response.status_code}")
        # Validate that it's actually image data
        test_img = Image.open(io.BytesIO(response.content))
        log.debug("Fal image generated: %s, %s", test_img.size, test_img.mode)
        mime = Image.MIME.get(test_img.format or "", self.config.output_mime_type)
        return response.content, mime


def _response_text(resp) -> str:
    if getattr(resp, "text", ""):
        return resp.text.strip()
    out = []
    for c in getattr(resp, "candidates", []) or []:
        content = getattr(c, "content", None)
        for p in getattr(content, "parts", None) or []:
            if getattr(p, "text", None):
                out.append(p.text)
    return "\n".join(out).strip()

# ------------------ PIPELINE STEPS ---------------


def describe_character(g: GAIC, image: CharacterImage, prompts: PromptLogger) -> str:
    prompts.log("CHARACTER_DESCRIPTION_PROMPT",
                f"[{image.mime_type}, {len(image.data)} bytes]\n{CHARACTER_DESCRIPTION_PROMPT}")
    description = g.describe_image(image, CHARACTER_DESCRIPTION_PROMPT)
    prompts.log("CHARACTER_DESCRIPTION_RESPONSE", description)
    return description


def build_story_prompt(request: GenerationRequest, character_description: str,
                       page_count: int = MAX_PAGES) -> str:
    return STORY_PROMPT_TEMPLATE.format(
        page_count=page_count,
        story_prompt=request.story_prompt.strip(),
        character_description=character_description,
        style=request.style_label,
    )


def plan_story(g: GAIC, prompt: str, page_count: int, prompts: PromptLogger) -> List[StoryPage]:
    prompts.log("STORY_PLANNING_PROMPT", prompt)
    response = g.generate_structured(prompt, List[StoryPage])
    prompts.log("STORY_PLANNING_RESPONSE", str(response))

    try:
        pages = coerce_story_pages(response)
    except (ValueError, ValidationError) as e:
        raise StoryPlanningError(EMPTY_STORY_MESSAGE) from e

    if not pages:
        raise StoryPlanningError(EMPTY_STORY_MESSAGE)
    if len(pages) < page_count:
        raise StoryPlanningError(
            f"Failed to generate story pages. Expected {page_count} pages but the model returned {len(pages)}.")
    if len(pages) > page_count:
        log.warning(
            "Story model returned %d pages; keeping the first %d", len(pages), page_count)
        pages = pages[:page_count]
    return pages


def render_page(g: GAIC, index: int, page: StoryPage, prompts: PromptLogger) -> ComicPage:
    prompts.log(f"PAGE_IMAGE_PROMPT [#{index + 1}]", page.imagePrompt)
    img_bytes, mime = g.generate_image(page.imagePrompt)
    return ComicPage(pageNumber=index + 1, text=page.pageText,
                     imageUrl=to_data_uri(img_bytes, mime))

# ------------------ ORCHESTRATION -----------------


@dataclass
class GenerationCallbacks:
    on_progress: Callable[[str], None]
    on_complete: Callable[[ComicDocument], None]
    on_error: Callable[[str], None]
    on_event: Optional[Callable[[ProgressEvent], None]] = None


class GenerationHandle:
    """Returned by ComicGenerator.generate; lets the caller cancel or wait."""

    def __init__(self, token: int):
        self.token = token
        self.stop_flag = threading.Event()
        self.finished = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def cancel(self) -> None:
        self.stop_flag.set()

    @property
    def cancelled(self) -> bool:
        return self.stop_flag.is_set()

    @property
    def done(self) -> bool:
        return self.finished.is_set()

    def join(self, timeout: Optional[float] = None) -> bool:
        return self.finished.wait(timeout)


class ComicGenerator:
    """
    Runs one generation: optional character description, story planning,
    then one image request per page in parallel. Every run ends with exactly
    one of on_complete / on_error.
    """

    def __init__(self, g: GAIC, page_count: Optional[int] = None):
        self.g = g
        self.page_count = page_count or g.config.page_count
        self._tokens = 0
        self._token_lock = threading.Lock()

    def _next_token(self) -> int:
        with self._token_lock:
            self._tokens += 1
            return self._tokens

    def generate(self, request: GenerationRequest, callbacks: GenerationCallbacks,
                 token: Optional[int] = None) -> GenerationHandle:
        """Start a generation on a worker thread and return immediately."""
        handle = GenerationHandle(token if token is not None else self._next_token())
        t = threading.Thread(target=self._worker, args=(request, callbacks, handle),
                             name=f"comic-generation-{handle.token}", daemon=True)
        handle.thread = t
        t.start()
        return handle

    def _worker(self, request: GenerationRequest, callbacks: GenerationCallbacks,
                handle: GenerationHandle) -> None:
        try:
            self.run(request, callbacks, handle.stop_flag)
        finally:
            handle.finished.set()

    def run(self, request: GenerationRequest, callbacks: GenerationCallbacks,
            stop_flag: Optional[threading.Event] = None) -> Optional[ComicDocument]:
        """Blocking form of generate(). Returns the document on success."""
        stop_flag = stop_flag or threading.Event()
        prompts = PromptLogger(echo=self.g.config.print_prompts)

        def emit(kind: ProgressKind, message: str, **extra) -> None:
            callbacks.on_progress(message)
            if callbacks.on_event:
                callbacks.on_event(ProgressEvent(
                    kind=kind, message=message, **extra))

        try:
            document = self._run_steps(request, emit, stop_flag, prompts)
        except Exception as e:
            if not isinstance(e, ComicGenerationError):
                log.exception("Error generating comic")
            reason = str(e) or UNEXPECTED_ERROR_MESSAGE
            callbacks.on_error(reason)
            if callbacks.on_event:
                callbacks.on_event(ProgressEvent(
                    kind="failed", message=reason, reason=reason))
            return None

        callbacks.on_complete(document)
        if callbacks.on_event:
            callbacks.on_event(ProgressEvent(
                kind="done", message="Comic generation complete!"))
        return document

    def _run_steps(self, request: GenerationRequest, emit, stop_flag: threading.Event,
                   prompts: PromptLogger) -> ComicDocument:
        def check_cancelled() -> None:
            if stop_flag.is_set():
                raise GenerationCancelled("Generation was cancelled.")

        emit("describing", "Analyzing your story idea...")

        # Step 1: character description
        description = request.character_description.strip()
        if request.character_image is not None:
            emit("describing", "Describing your character from the image...")
            description = describe_character(
                self.g, request.character_image, prompts)
            emit("describing", "Character description created.")
        elif not description:
            description = DEFAULT_CHARACTER_DESCRIPTION
        check_cancelled()

        # Step 2: story pages
        emit("story_planning", "Breaking down the story into pages...")
        prompt = build_story_prompt(request, description, self.page_count)
        story_pages = plan_story(self.g, prompt, self.page_count, prompts)
        check_cancelled()

        # Step 3: page images, all at once
        emit("image_generating", "Story pages created. Now generating images...")
        total = len(story_pages)
        comic_pages: List[ComicPage] = []
        with ThreadPoolExecutor(max_workers=total, thread_name_prefix="page-image") as executor:
            futures = []
            for i, page in enumerate(story_pages):
                check_cancelled()
                emit("image_generating", f"Generating image for page {i + 1}/{total}...",
                     index=i + 1, total=total)
                futures.append(executor.submit(
                    render_page, self.g, i, page, prompts))
            try:
                for fut in as_completed(futures):
                    comic_pages.append(fut.result())
            except BaseException:
                # First failure wins; leaving the block waits for in-flight requests.
                for fut in futures:
                    fut.cancel()
                raise
        check_cancelled()

        emit("assembling", "All images generated! Assembling your comic book.")
        comic_pages.sort(key=lambda p: p.pageNumber)
        return ComicDocument(pages=tuple(comic_pages))
