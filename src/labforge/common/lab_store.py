"""Persistence for custom labs.

Records live in a JSON array on disk, mirrored to a second file for the
browsing UI. Every write rewrites the whole array.
"""

import json
import logging
import pathlib
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from labforge.common import settings

logger = logging.getLogger(__name__)

Difficulty = Literal["beginner", "intermediate", "advanced"]
VALID_DIFFICULTIES = ("beginner", "intermediate", "advanced")
DEFAULT_DURATION = "30 min"
DEFAULT_CATEGORY = "custom"
SCRIPT_MODE = 0o755


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LabRecord(CamelModel):
    """A custom lab as stored on disk."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    id: str
    topic: str = ""
    title: str
    description: str
    difficulty: Difficulty = "beginner"
    duration: str = DEFAULT_DURATION
    category: str = DEFAULT_CATEGORY
    objectives: list[str] = []
    commands: list[str] = []
    hints: list[str] = []
    script_path: str
    created_at: str
    updated_at: str | None = None


class LabPayload(CamelModel):
    """Fields accepted when creating or updating a custom lab.

    Arrays are typed loosely on purpose: anything that is not a list of
    strings is normalised away instead of rejected.
    """

    title: str | None = None
    description: str | None = None
    difficulty: str | None = None
    duration: str | None = None
    objectives: Any = None
    commands: Any = None
    hints: Any = None
    script: str | None = None
    topic: str | None = None
    category: Any = None


class LabValidationError(ValueError):
    """A required custom lab field is missing."""


class LabNotFoundError(KeyError):
    """No custom lab has the requested id."""


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or f"custom-lab-{int(datetime.now(timezone.utc).timestamp() * 1000)}"


def normalize_array(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def normalize_difficulty(value: str | None) -> str | None:
    if value and value.lower() in VALID_DIFFICULTIES:
        return value.lower()
    return None


def validate_new_lab(payload: LabPayload) -> None:
    if not payload.title or not payload.title.strip():
        raise LabValidationError("Title is required")
    if not payload.description or not payload.description.strip():
        raise LabValidationError("Description is required")
    if not payload.script or not payload.script.strip():
        raise LabValidationError("Script is required")


class LabStore:
    def __init__(
        self,
        labs_file: pathlib.Path = settings.CUSTOM_LABS_FILE,
        mirror_file: pathlib.Path | None = settings.FRONTEND_CUSTOM_LABS_FILE,
        scripts_dir: pathlib.Path = settings.CUSTOM_SCRIPTS_DIR,
    ):
        self.labs_file = pathlib.Path(labs_file)
        self.mirror_file = pathlib.Path(mirror_file) if mirror_file else None
        self.scripts_dir = pathlib.Path(scripts_dir)
        self._lock = threading.Lock()

    @staticmethod
    def _ensure_file(path: pathlib.Path, fallback: str = "[]\n") -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        if not path.exists():
            path.write_text(fallback, encoding="utf-8")

    def _load(self) -> list[LabRecord]:
        self._ensure_file(self.labs_file)
        try:
            parsed = json.loads(self.labs_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read {self.labs_file}: {e}")
            return []
        if not isinstance(parsed, list):
            return []

        labs = []
        for item in parsed:
            try:
                labs.append(LabRecord.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed lab record: {e}")
        return labs

    def _save(self, labs: list[LabRecord]) -> None:
        content = (
            json.dumps(
                [lab.model_dump(by_alias=True, exclude_none=True) for lab in labs],
                indent=2,
            )
            + "\n"
        )
        targets = [self.labs_file] + ([self.mirror_file] if self.mirror_file else [])
        for target in targets:
            self._ensure_file(target)
            target.write_text(content, encoding="utf-8")

    def resolve_script_path(self, record: LabRecord) -> pathlib.Path:
        path = pathlib.Path(record.script_path)
        if path.is_absolute():
            return path
        return self.scripts_dir / path

    def _write_script(self, path: pathlib.Path, script: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(script, encoding="utf-8")
        path.chmod(SCRIPT_MODE)

    def list_labs(self) -> list[LabRecord]:
        """All custom labs, newest first."""
        with self._lock:
            labs = self._load()
        return sorted(labs, key=lambda lab: lab.created_at or "", reverse=True)

    def get(self, lab_id: str) -> LabRecord | None:
        with self._lock:
            return next((lab for lab in self._load() if lab.id == lab_id), None)

    def create(self, payload: LabPayload) -> LabRecord:
        validate_new_lab(payload)
        assert payload.title and payload.description and payload.script

        lab_id = f"{slugify(payload.title)}-{uuid.uuid4().hex[:8]}"
        script_filename = f"custom-{lab_id}.sh"
        category = payload.category
        record = LabRecord(
            id=lab_id,
            topic=(payload.topic or "").strip(),
            title=payload.title.strip(),
            description=payload.description.strip(),
            difficulty=normalize_difficulty(payload.difficulty) or "beginner",
            duration=(payload.duration or "").strip() or DEFAULT_DURATION,
            category=(
                category.strip()
                if isinstance(category, str) and category.strip()
                else DEFAULT_CATEGORY
            ),
            objectives=normalize_array(payload.objectives),
            commands=normalize_array(payload.commands),
            hints=normalize_array(payload.hints),
            script_path=script_filename,
            created_at=utcnow_iso(),
        )

        with self._lock:
            self._write_script(self.resolve_script_path(record), payload.script)
            labs = self._load()
            labs.append(record)
            self._save(labs)

        logger.info(f"Created custom lab {lab_id}")
        return record

    def update(self, lab_id: str, payload: LabPayload) -> LabRecord:
        """Apply a partial update.

        Raises:
            LabNotFoundError: if no lab has this id
        """
        with self._lock:
            labs = self._load()
            idx = next((i for i, lab in enumerate(labs) if lab.id == lab_id), None)
            if idx is None:
                raise LabNotFoundError(lab_id)

            record = labs[idx]
            if payload.title and payload.title.strip():
                record.title = payload.title.strip()
            if payload.description and payload.description.strip():
                record.description = payload.description.strip()
            if payload.topic:
                record.topic = payload.topic.strip()
            if isinstance(payload.category, str) and payload.category.strip():
                record.category = payload.category.strip()
            if difficulty := normalize_difficulty(payload.difficulty):
                record.difficulty = difficulty  # type: ignore[assignment]
            if payload.duration and payload.duration.strip():
                record.duration = payload.duration.strip()

            record.objectives = normalize_array(payload.objectives)
            record.commands = normalize_array(payload.commands)
            record.hints = normalize_array(payload.hints)

            if payload.script is not None:
                self._write_script(self.resolve_script_path(record), payload.script)

            record.updated_at = utcnow_iso()
            labs[idx] = record
            self._save(labs)

        logger.info(f"Updated custom lab {lab_id}")
        return record
