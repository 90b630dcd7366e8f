# forms.py
from typing import List, Mapping, Optional

from comic_engine import STYLE_IDS, CharacterImage, GenerationRequest

CHARACTER_SOURCES = ("image", "description")


class FormValidationError(ValueError):
    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class GenerationForm:
    """
    Input form state. The character image and the typed description are
    mutually exclusive: whichever was set last clears the other.
    """

    def __init__(self, prompt: str = "", style: str = "anime", custom_style: str = ""):
        self.prompt = prompt
        self.style = style
        self.custom_style = custom_style
        self.character_image: Optional[CharacterImage] = None
        self.character_description = ""
        self.upload_errors: List[str] = []

    def set_character_image(self, image: Optional[CharacterImage]) -> None:
        self.character_image = image
        if image is not None:
            self.character_description = ""

    def set_character_description(self, text: str) -> None:
        self.character_description = text
        if self.character_image is not None:
            self.character_image = None

    @property
    def image_preview(self) -> Optional[str]:
        return self.character_image.to_data_uri() if self.character_image else None

    def errors(self) -> List[str]:
        errors = list(self.upload_errors)
        if not self.prompt.strip():
            errors.append("Please enter a story idea.")
        if self.style not in STYLE_IDS:
            errors.append(f"Unknown style '{self.style}'.")
        elif self.style == "custom" and not self.custom_style.strip():
            errors.append("Please describe your custom style.")
        return errors

    @property
    def is_valid(self) -> bool:
        return not self.errors()

    def to_request(self) -> GenerationRequest:
        errors = self.errors()
        if errors:
            raise FormValidationError(errors)
        return GenerationRequest(
            story_prompt=self.prompt,
            style=self.style,
            custom_style=self.custom_style if self.style == "custom" else "",
            character_image=self.character_image,
            character_description=self.character_description.strip(),
        )

    @classmethod
    def from_submission(cls, form: Mapping[str, str], files: Optional[Mapping] = None,
                        max_upload_bytes: Optional[int] = None) -> "GenerationForm":
        """
        Build the form from a multipart submission.

        ``character_source`` names the character input the user touched last;
        the other one is applied first so the last write wins. Without it the
        image takes precedence, as it does in GenerationRequest.
        """
        gf = cls(
            prompt=form.get("prompt", ""),
            style=form.get("style", "anime") or "anime",
            custom_style=form.get("custom_style", ""),
        )

        image = None
        upload = (files or {}).get("character_image")
        if upload is not None and getattr(upload, "filename", ""):
            raw = upload.read()
            if max_upload_bytes and len(raw) > max_upload_bytes:
                gf.upload_errors.append(
                    f"Character image is too large (limit {max_upload_bytes} bytes).")
            else:
                try:
                    image = CharacterImage.from_upload(raw, getattr(upload, "mimetype", None))
                except ValueError as e:
                    gf.upload_errors.append(str(e))

        description = form.get("character_description", "")
        source = form.get("character_source", "image")
        if source not in CHARACTER_SOURCES:
            source = "image"

        if source == "description":
            if image is not None:
                gf.set_character_image(image)
            if description:
                gf.set_character_description(description)
        else:
            if description:
                gf.set_character_description(description)
            if image is not None:
                gf.set_character_image(image)
        return gf
