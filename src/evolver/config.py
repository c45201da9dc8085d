"""
Configuration Module

Loads environment variables and provides configuration constants for the
evolver service and the voice session engine. Storage and archival are fully
local; only the LLM, speech and voice transport endpoints are remote.

==============================================================================
FEATURES CONFIGURED IN THIS MODULE:
==============================================================================

1. RETRY CONFIGURATION FOR RATE LIMITING (Feature: rate-limit-retry)
   - RETRY_MAX_ATTEMPTS: How many times to retry before giving up
   - RETRY_BASE_DELAY: Initial delay (seconds), doubles each retry
   - RETRY_MAX_DELAY: Maximum delay cap to prevent excessive waits

2. VOICE SESSION LIMITS (Feature: voice-sessions)
   - Turn-taking grace period, minimum audio length, turn/duration budgets

3. ANALYSIS THRESHOLDS (Feature: healing-suggestions)
   - Quality floors below which healing suggestions are requested

==============================================================================
"""

import os
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# SQLite (local database)
SQLITE_DB_PATH = os.getenv("SQLITE_DB_PATH", os.path.join(os.path.dirname(__file__), "..", "..", "data", "evolver.db"))

# API
API_TITLE = os.getenv("API_TITLE", "Voice Prompt Evolver API")
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
API_DEBUG = os.getenv("API_DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# CORS
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")

# LLM Configuration (judge + optimizer; any OpenAI-compatible endpoint)
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "https://api.openai.com/v1")
LLM_API_KEY = os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY") or "ollama"
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")

# Persona LLM (generates the synthetic customer's replies)
PERSONA_LLM_MODEL = os.getenv("PERSONA_LLM_MODEL", "gpt-4o")
PERSONA_TEMPERATURE = float(os.getenv("PERSONA_TEMPERATURE", "0.8"))
PERSONA_MAX_TOKENS = int(os.getenv("PERSONA_MAX_TOKENS", "300"))

# ==============================================================================
# SPEECH (Feature: voice-sessions)
# ==============================================================================
# Transcription and synthesis go through the OpenAI audio endpoints. These are
# configured separately from the judge LLM because local OpenAI-compatible
# servers usually don't expose /audio routes.
# ==============================================================================
SPEECH_BASE_URL = os.getenv("SPEECH_BASE_URL", "https://api.openai.com/v1")
SPEECH_API_KEY = os.getenv("SPEECH_API_KEY") or os.getenv("OPENAI_API_KEY") or LLM_API_KEY
STT_MODEL = os.getenv("STT_MODEL", "whisper-1")
TTS_MODEL = os.getenv("TTS_MODEL", "tts-1")
TTS_VOICE = os.getenv("TTS_VOICE", "onyx")

# ==============================================================================
# VOICE TRANSPORT (Feature: voice-sessions)
# ==============================================================================
# WEB_CALL_API_URL creates a web call for the agent under test and returns a
# LiveKit access token; LIVEKIT_URL is the room server the token is valid for.
# ==============================================================================
WEB_CALL_API_URL = os.getenv("WEB_CALL_API_URL", "https://webcall-back.dapta.ai/api/create-web-call")
WEB_CALL_REFERER = os.getenv("WEB_CALL_REFERER", "https://app.dapta.ai/")
WEB_CALL_TIMEOUT_SECONDS = float(os.getenv("WEB_CALL_TIMEOUT_SECONDS", "15"))
LIVEKIT_URL = os.getenv("LIVEKIT_URL", "wss://retell-ai-4ihahnq7.livekit.cloud")

# ==============================================================================
# VOICE SESSION LIMITS (Feature: voice-sessions)
# ==============================================================================
# - SILENCE_GRACE_SECONDS: silence after "agent stopped talking" before the
#   agent's turn is treated as finished
# - MIN_AUDIO_SECONDS: shorter buffered audio is discarded as noise
# - SESSION_TIMEOUT_GRACE_SECONDS: added to MAX_DURATION_SECONDS for the hard
#   per-session ceiling
# - SAMPLES_PER_FRAME: 480 samples = 10ms at 48kHz
# ==============================================================================
MAX_TURNS = int(os.getenv("MAX_TURNS", "20"))
MAX_DURATION_SECONDS = float(os.getenv("MAX_DURATION_SECONDS", "180"))
SILENCE_GRACE_SECONDS = float(os.getenv("SILENCE_GRACE_SECONDS", "4.5"))
MIN_AUDIO_SECONDS = float(os.getenv("MIN_AUDIO_SECONDS", "0.5"))
SESSION_TIMEOUT_GRACE_SECONDS = float(os.getenv("SESSION_TIMEOUT_GRACE_SECONDS", "30"))
TRANSCRIPT_PERSIST_EVERY = int(os.getenv("TRANSCRIPT_PERSIST_EVERY", "4"))
SAMPLE_RATE = 48000
NUM_CHANNELS = 1
SAMPLES_PER_FRAME = 480

# ==============================================================================
# ANALYSIS THRESHOLDS (Feature: healing-suggestions)
# ==============================================================================
ACCURACY_FLOOR = float(os.getenv("ACCURACY_FLOOR", "85"))
CONVERSION_FLOOR = float(os.getenv("CONVERSION_FLOOR", "50"))
TRANSCRIPT_SAMPLE_SIZE = int(os.getenv("TRANSCRIPT_SAMPLE_SIZE", "5"))
SUGGESTION_SAMPLE_SIZE = int(os.getenv("SUGGESTION_SAMPLE_SIZE", "3"))

# Evaluation defaults
DEFAULT_CONCURRENCY = int(os.getenv("DEFAULT_CONCURRENCY", "3"))

# ==============================================================================
# AUDIO ARCHIVE (Feature: audio-archive)
# ==============================================================================
# Combined call audio is written under BLOB_STORE_DIR and served by the API
# at /blobs, so BLOB_PUBLIC_BASE_URL must point at that mount.
# ==============================================================================
BLOB_STORE_DIR = os.getenv("BLOB_STORE_DIR", os.path.join(os.path.dirname(__file__), "..", "..", "data", "blobs"))
BLOB_PUBLIC_BASE_URL = os.getenv("BLOB_PUBLIC_BASE_URL", f"http://localhost:{API_PORT}/blobs")

# ==============================================================================
# RETRY CONFIGURATION FOR RATE LIMITING (Feature: rate-limit-retry)
# ==============================================================================
# These settings control how LLM calls handle rate limit (429) errors.
#
# With defaults (5 attempts, 2s base): waits 2s, 4s, 8s, 16s = 30s max
# ==============================================================================
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "5"))
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "2.0"))
RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "60.0"))

# ==============================================================================
# COST ATTRIBUTION (Feature: cost-attribution)
# ==============================================================================
# Maps model names to per-1K-token pricing for persona reply generation.
# "_default" is the fallback for unknown models.
# ==============================================================================
PRICING_TABLE: dict = {
    "gpt-4o": {"input_per_1k": 0.005, "output_per_1k": 0.015},
    "gpt-4o-mini": {"input_per_1k": 0.00015, "output_per_1k": 0.0006},
    "gpt-4-turbo": {"input_per_1k": 0.01, "output_per_1k": 0.03},
    "gpt-3.5-turbo": {"input_per_1k": 0.0005, "output_per_1k": 0.0015},
    "llama3": {"input_per_1k": 0.0, "output_per_1k": 0.0},
    "qwen3-coder:latest": {"input_per_1k": 0.0, "output_per_1k": 0.0},
    "_default": {"input_per_1k": 0.001, "output_per_1k": 0.002},
}
