import logging
from io import BytesIO
from typing import Optional

from openai import AsyncAzureOpenAI

from ..core.config import settings
from .openai_service import EvaluationError

logger = logging.getLogger(__name__)


class AudioService:
    def __init__(self):
        if not settings.azure_openai_endpoint_audio or not settings.azure_openai_api_key_audio:
            logger.warning("Azure OpenAI audio not configured. Speaking transcription disabled.")
            self.transcribe_client: Optional[AsyncAzureOpenAI] = None
            return
        self.transcribe_client = AsyncAzureOpenAI(
            api_version=settings.azure_openai_audio_api_version,
            azure_endpoint=settings.azure_openai_endpoint_audio,
            api_key=settings.azure_openai_api_key_audio,
        )
        logger.info(
            f"Audio service initialized, transcribe deployment: {settings.azure_openai_transcribe_deployment}"
        )

    def _detect_audio_format(self, audio_data: bytes) -> str:
        if len(audio_data) < 12:
            return "wav"
        if audio_data[:4] == b'RIFF' and audio_data[8:12] == b'WAVE':
            return "wav"
        elif audio_data[:4] == b'\x1a\x45\xdf\xa3':
            return "webm"
        elif audio_data[:3] == b'ID3' or audio_data[:2] == b'\xff\xfb':
            return "mp3"
        elif audio_data[:4] == b'OggS':
            return "ogg"
        elif b'ftyp' in audio_data[:20]:
            return "mp4"
        else:
            return "webm"

    async def speech_to_text_from_bytes(self, audio_data: bytes) -> str:
        if not self.transcribe_client:
            raise EvaluationError("Azure OpenAI audio is not configured")
        if not audio_data:
            raise EvaluationError("Uploaded media is empty")

        audio_io = BytesIO(audio_data)
        audio_io.name = f"audio.{self._detect_audio_format(audio_data)}"

        transcript = await self.transcribe_client.audio.transcriptions.create(
            model=settings.azure_openai_transcribe_deployment,
            file=audio_io,
            response_format="text",
        )
        result = str(transcript).strip()
        logger.info(f"Transcription finished, {len(result)} characters")
        return result


audio_service = AudioService()
