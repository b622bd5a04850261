import os
import pathlib
from dotenv import load_dotenv

load_dotenv()


def boolean_env(key: str, default: bool = False) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


PACKAGE_DIR = pathlib.Path(__file__).resolve().parent.parent
PROJECT_ROOT = pathlib.Path(os.getenv("LABFORGE_ROOT", pathlib.Path.cwd()))

# Images
LAB_BASE_IMAGE = os.getenv("LAB_BASE_IMAGE", "linux-lab-base:latest")
LAB_BASE_DOCKERFILE = pathlib.Path(
    os.getenv("LAB_BASE_DOCKERFILE", PROJECT_ROOT / "docker" / "lab-base" / "Dockerfile")
)
LAB_BASE_BUILD_CONTEXT = pathlib.Path(
    os.getenv("LAB_BASE_BUILD_CONTEXT", LAB_BASE_DOCKERFILE.parent)
)
LAB_FALLBACK_IMAGE = os.getenv("LAB_FALLBACK_IMAGE", "debian:latest")

# Session containers
SESSION_TTL_SECONDS = float(os.getenv("SESSION_TTL_SECONDS", 60 * 60))
SESSION_MEMORY_LIMIT = os.getenv("SESSION_MEMORY_LIMIT", "512m")
DEFAULT_LAB_TYPE = os.getenv("DEFAULT_LAB_TYPE", "basics-1")
DEFAULT_CONTAINER_NAME = os.getenv("DEFAULT_CONTAINER_NAME", "linux-lab")
PREVIEW_LAB_TYPE = os.getenv("PREVIEW_LAB_TYPE", "custom-preview")

# Lab user (must match the bootstrap script)
STUDENT_USER = "student"
STUDENT_PASSWORD = os.getenv("STUDENT_PASSWORD", "student123")
STUDENT_HOME = f"/home/{STUDENT_USER}"

# Shared script-test sandbox
SANDBOX_CONTAINER_NAME = os.getenv("SANDBOX_CONTAINER_NAME", "lab-test-sandbox")
SANDBOX_MEMORY_LIMIT = os.getenv("SANDBOX_MEMORY_LIMIT", "256m")
SANDBOX_WORKSPACE = os.getenv("SANDBOX_WORKSPACE", "/workspace")
TREE_MAX_DEPTH = int(os.getenv("TREE_MAX_DEPTH", 12))

# Exercise scripts and custom lab storage
EXERCISES_DIR = pathlib.Path(os.getenv("EXERCISES_DIR", PACKAGE_DIR / "exercises"))
DATA_DIR = pathlib.Path(os.getenv("LABFORGE_DATA_DIR", "/tmp/labforge"))
CUSTOM_SCRIPTS_DIR = pathlib.Path(
    os.getenv("CUSTOM_SCRIPTS_DIR", DATA_DIR / "exercises")
)
CUSTOM_LABS_FILE = pathlib.Path(
    os.getenv("CUSTOM_LABS_FILE", DATA_DIR / "custom-labs.json")
)
FRONTEND_CUSTOM_LABS_FILE = pathlib.Path(
    os.getenv("FRONTEND_CUSTOM_LABS_FILE", DATA_DIR / "frontend" / "custom-labs.json")
)

# Terminal
TERMINAL_WELCOME_DELAY = float(os.getenv("TERMINAL_WELCOME_DELAY", 0.5))

# API settings
SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("SERVER_PORT", 3001))
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "*").split(",")
    if origin.strip()
]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
RELOAD = boolean_env("RELOAD", False)
