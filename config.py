import os
from dotenv import load_dotenv
from pathlib import Path

load_dotenv()

# logging config
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEV").upper()

# file config
BASE_PATH = Path(__file__).parent
LOG_PATH = Path(os.getenv("LOG_PATH", BASE_PATH / "log"))
LOG_PATH.mkdir(parents=True, exist_ok=True)

# audio
# Capture produces raw PCM, 16 kHz, mono, 16-bit signed little-endian.
AUDIO_SAMPLE_RATE = 16000
AUDIO_CHANNELS = 1
AUDIO_SAMPLE_WIDTH_BYTES = 2
AUDIO_CHUNK_MS = 100

# Default provider when STT_PROVIDER is not set ("soniox" or "deepgram").
STT_DEFAULT_PROVIDER = "soniox"

# Soniox realtime STT
# https://soniox.com/docs/speech-to-text/api-reference/websocket-api
SONIOX_STT_URL = "wss://stt-rt.soniox.com/transcribe-websocket"
SONIOX_STT_MODEL = "stt-rt-preview"

# Deepgram live audio STT
# https://developers.deepgram.com/docs/live-streaming-audio
DEEPGRAM_STT_URL = "wss://api.deepgram.com/v1/listen"
DEEPGRAM_STT_MODEL = "nova-3"
DEEPGRAM_STT_LANGUAGE = "multi"
# Silence (ms) after which Deepgram reports speech_final.
DEEPGRAM_STT_ENDPOINTING_MS = 100

# Protocol timing quirks. These are fixed delays, not deadlines:
# Deepgram has no ready message, so the socket is treated as usable shortly after opening.
DEEPGRAM_READY_DELAY_S = 0.1
# Deepgram keeps emitting trailing transcripts for a while after CloseStream.
DEEPGRAM_DRAIN_DELAY_S = 0.5
# Delay between key release and finalize, so audio already in flight still gets transcribed.
STOP_FINALIZE_DELAY_S = 0.3

# WebSocket transport
WS_OPEN_TIMEOUT_S = 10
WS_PING_INTERVAL_S = 10
WS_PING_TIMEOUT_S = 10
WS_CLOSE_TIMEOUT_S = 5
