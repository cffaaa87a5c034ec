import logging
import re

from sahay.errors import AudioTooLarge, AudioTooSmall, NoSpeechDetected

logger = logging.getLogger(__name__)

MIN_AUDIO_BYTES = 5000
MAX_AUDIO_BYTES = 50 * 1024 * 1024

# Initial prompts handed to the speech engine to bias decoding towards the selected language.
# Whisper occasionally echoes them back, so `clean` strips them again.
LANGUAGE_PROMPTS: dict[str, str] = {
    "hi": "नमस्ते, यह हिंदी में बोला गया है।",
    "ml": "നമസ്കാരം, ഇത് മലയാളത്തിൽ പറഞ്ഞതാണ്.",
    "kn": "ನಮಸ್ಕಾರ, ಇದು ಕನ್ನಡದಲ್ಲಿ ಹೇಳಲಾಗಿದೆ.",
    "en": "Hello, this is spoken in English.",
}

HALLUCINATION_ARTIFACTS = (
    "[BLANK_AUDIO]",
    "[MUSIC]",
    "[NOISE]",
    "(inaudible)",
    "Thank you for watching",
    "Thanks for watching",
    "Please subscribe",
)

_ARTIFACT_PAT = re.compile("|".join(re.escape(a) for a in HALLUCINATION_ARTIFACTS), flags=re.I)
# Generic non-speech tags: "[MUSIC PLAYING]", "[ Silence ]", "(upbeat music)".
_BRACKET_TAG_PAT = re.compile(r"\[\s*[A-Z][A-Z _-]*\s*\]")
_PAREN_TAG_PAT = re.compile(r"\(\s*(?:upbeat |soft |background )?(?:music|noise|silence|applause|laughter)\s*\)", flags=re.I)
# Whitespace-delimited so Devanagari/Dravidian words (with combining marks) count as one word.
_REPEAT_PAT = re.compile(r"(?<!\S)(\S+)(?:\s+\1){3,}(?!\S)", flags=re.I)


def prompt_for(language: str | None) -> str | None:
    lang = (language or "").strip().lower()
    if not lang or lang == "auto":
        return None
    return LANGUAGE_PROMPTS.get(lang)


class TranscriptValidator:
    """
    Pre-transcription gating and post-transcription cleanup for speech-to-text output.
    """

    def __init__(self, *, min_bytes: int = MIN_AUDIO_BYTES, max_bytes: int = MAX_AUDIO_BYTES):
        self.min_bytes = int(min_bytes)
        self.max_bytes = int(max_bytes)

    def is_acceptable(self, audio_file_size_bytes: int) -> bool:
        size = int(audio_file_size_bytes)
        return self.min_bytes <= size <= self.max_bytes

    def check_size(self, audio_file_size_bytes: int) -> None:
        size = int(audio_file_size_bytes)
        if size < self.min_bytes:
            logger.warning("Audio file too small: %.2fKB", size / 1024)
            raise AudioTooSmall(f"Audio file too small ({size} bytes)")
        if size > self.max_bytes:
            logger.warning("Audio file too large: %.2fKB", size / 1024)
            raise AudioTooLarge(f"Audio file too large ({size} bytes)")

    @staticmethod
    def _resolve_hint(language_hint: str | None) -> str | None:
        hint = (language_hint or "").strip()
        if not hint:
            return None
        # Language codes map to their fixed prompt phrase; anything else is the literal prompt.
        return prompt_for(hint) if hint.lower() in LANGUAGE_PROMPTS or hint.lower() == "auto" else hint

    @staticmethod
    def collapse_repeats(text: str) -> str:
        prev = None
        t = text
        while prev != t:
            prev = t
            t = _REPEAT_PAT.sub(lambda m: m.group(1), t)
        return t

    def clean(self, raw_text: str, language_hint: str | None = None) -> str:
        raw = (raw_text or "").strip()

        cleaned = raw
        prompt = self._resolve_hint(language_hint)
        if prompt:
            cleaned = cleaned.replace(prompt, " ")

        cleaned = _ARTIFACT_PAT.sub(" ", cleaned)
        cleaned = _BRACKET_TAG_PAT.sub(" ", cleaned)
        cleaned = _PAREN_TAG_PAT.sub(" ", cleaned)
        cleaned = self.collapse_repeats(cleaned)
        cleaned = " ".join(cleaned.split()).strip()

        if cleaned:
            return cleaned

        if raw:
            logger.warning("Transcription empty after cleaning, using original: %s", raw[:80])
            return raw

        raise NoSpeechDetected("Transcription completely empty")
