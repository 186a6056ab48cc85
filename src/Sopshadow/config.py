"""Configuration loading for Sopshadow.

Responsabilités:
- Charger les réglages utilisateur depuis l'environnement via pydantic-settings
- Résoudre le fichier run control `.sopsrc` (par dossier de workspace ou chemin explicite)
- Construire les arguments et variables d'environnement généraux passés à `sops`

Le run control est relu à chaque invocation de `sops`: il peut changer entre
deux éditions et la lecture est peu coûteuse.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .logging_utils import get_logger

DEFAULT_RUN_CONTROL_FILENAME = ".sopsrc"
GCP_CREDENTIALS_ENV_VAR_NAME = "GOOGLE_APPLICATION_CREDENTIALS"
AGE_KEY_FILE_ENV_VAR_NAME = "SOPS_AGE_KEY_FILE"
AWS_PROFILE_ENV_VAR_NAME = "AWS_PROFILE"

logger = get_logger(__name__)


class Settings(BaseSettings):
    """Réglages utilisateur de Sopshadow.

    Chargés depuis l'environnement (préfixe `Sopshadow_`).
    """

    model_config = SettingsConfigDict(env_prefix="Sopshadow_", env_file=None, extra="ignore")

    enabled: bool = Field(default=True, description="Active la synchronisation des shadows.")
    creation_enabled: bool = Field(
        default=False,
        description="Chiffre à l'enregistrement les fichiers couverts par une creation rule de .sops.yaml.",
    )
    bin_path: str = Field(default="sops", description="Chemin de l'exécutable sops.")

    # Valeurs par défaut, surchargées par le run control
    default_aws_profile: str | None = Field(default=None)
    default_gcp_credentials_path: str | None = Field(default=None)
    default_age_key_file: str | None = Field(default=None)

    config_path: str | None = Field(
        default=None,
        description="Chemin du run control (absolu ou relatif à chaque workspace). Défaut: .sopsrc",
    )
    workspace_roots: list[Path] = Field(default_factory=lambda: [Path.cwd()])
    file_associations: Dict[str, str] = Field(
        default_factory=dict,
        description="Associations glob -> identifiant de langage, comme dans l'éditeur.",
    )

    engine_timeout: float | None = Field(default=None, description="Timeout (s) des appels à sops.")
    log_level: str = Field(default="INFO", description="Niveau de log (DEBUG, INFO, ...)")

    @field_validator("engine_timeout")
    @classmethod
    def _validate_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("engine_timeout must be positive")
        return value


class RunControl(BaseModel):
    """Contenu du fichier `.sopsrc`."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    aws_profile: str | None = Field(default=None, alias="awsProfile")
    gcp_credentials_path: str | None = Field(default=None, alias="gcpCredentialsPath")
    age_key_file: str | None = Field(default=None, alias="ageKeyFile")


@dataclass(slots=True)
class EngineOptions:
    """Arguments généraux et surcharge d'environnement pour `sops`."""

    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


def run_control_candidates(settings: Settings) -> list[Path]:
    """Liste ordonnée des emplacements possibles du run control."""

    candidates: list[Path] = []
    rc_path = settings.config_path
    for root in settings.workspace_roots:
        if rc_path:
            # Chemin absolu: identique pour tous les workspaces
            candidates.append(Path(rc_path) if Path(rc_path).is_absolute() else Path(root) / rc_path)
        else:
            candidates.append(Path(root) / DEFAULT_RUN_CONTROL_FILENAME)
    return candidates


def _load_run_control_file(path: Path) -> RunControl:
    data: Any = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return RunControl()
    if not isinstance(data, dict):
        raise ValueError(f"Le run control {path} doit contenir un mapping racine.")
    return RunControl.model_validate(data)


def load_run_control(settings: Settings) -> RunControl:
    """Retourne le premier run control existant et valide, sinon un run control vide."""

    for candidate in run_control_candidates(settings):
        if not candidate.is_file():
            continue
        try:
            rc = _load_run_control_file(candidate)
        except (OSError, yaml.YAMLError, ValueError, ValidationError) as exc:
            logger.warning("Invalid run control file, skipping", extra={"path": str(candidate), "error": str(exc)})
            continue
        logger.debug("Loaded run control", extra={"path": str(candidate)})
        return rc
    return RunControl()


def resolve_workspace_path(value: str, roots: list[Path]) -> str:
    """Résout un chemin relatif contre le premier workspace où il existe.

    Les chemins absolus, ou introuvables, sont retournés tels quels.
    """

    if Path(value).is_absolute():
        return value
    for root in roots:
        candidate = Path(root) / value
        if candidate.exists():
            return str(candidate)
    return value


def build_engine_options(settings: Settings) -> EngineOptions:
    """Construit les options générales de `sops` (run control > réglages par défaut)."""

    rc = load_run_control(settings)
    aws_profile = rc.aws_profile or settings.default_aws_profile
    gcp_credentials_path = rc.gcp_credentials_path or settings.default_gcp_credentials_path
    age_key_file = rc.age_key_file or settings.default_age_key_file

    options = EngineOptions()
    if aws_profile:
        options.args.extend(["--aws-profile", aws_profile])
        # --aws-profile seul ne suffit pas toujours, on exporte aussi la variable
        options.env[AWS_PROFILE_ENV_VAR_NAME] = aws_profile

    if gcp_credentials_path:
        options.env[GCP_CREDENTIALS_ENV_VAR_NAME] = resolve_workspace_path(
            gcp_credentials_path, settings.workspace_roots
        )

    if age_key_file:
        options.env[AGE_KEY_FILE_ENV_VAR_NAME] = resolve_workspace_path(age_key_file, settings.workspace_roots)

    logger.debug("Resolved sops options", extra={"sops_args": options.args, "env_keys": sorted(options.env)})
    return options
