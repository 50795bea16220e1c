"""Configuration settings for the dataset generator."""

from dataclasses import asdict, dataclass, field
from typing import Optional
import json
import os


@dataclass
class InputConfig:
    """Sensor log input settings."""
    keep_one_out_of: int = 1  # Decimation: keep 1 of every k clouds


@dataclass
class OutputConfig:
    """Dataset output settings."""
    output_dir: str = "./dataset"
    suffix_width: int = 4  # Zero padding of scan indices in file names
    save_odometry: bool = True  # False saves decimated clouds only


@dataclass
class RegistrationConfig:
    """ICP registration settings."""
    profile: Optional[str] = None  # Opaque profile handed to the engine
    max_correspondence_distance: float = 0.5  # meters
    fitness_threshold: float = 0.3
    max_iterations: int = 50
    voxel_size: float = 0.0  # meters, 0 disables downsampling


@dataclass
class ReviewConfig:
    """Human review of registrations."""
    enabled: bool = False
    perturbation_rad: float = 0.2  # Yaw applied to the initial guess on rejection
    viewer_command: Optional[str] = None  # e.g. "paraview {path}"


@dataclass
class ErrorPolicyConfig:
    """What to do when a single scan fails: "skip" or "abort"."""
    registration_failure: str = "skip"
    storage_failure: str = "abort"


@dataclass
class GeneratorConfig:
    """Main dataset generator configuration."""
    input: InputConfig = field(default_factory=InputConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    registration: RegistrationConfig = field(default_factory=RegistrationConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    errors: ErrorPolicyConfig = field(default_factory=ErrorPolicyConfig)

    SECTIONS = ("input", "output", "registration", "review", "errors")

    @classmethod
    def from_dict(cls, data: dict) -> "GeneratorConfig":
        """Build a config from a dictionary; unknown keys are ignored."""
        config = cls()
        for section_name in cls.SECTIONS:
            if section_name not in data:
                continue
            section = getattr(config, section_name)
            for k, v in data[section_name].items():
                if hasattr(section, k):
                    setattr(section, k, v)
        config.validate()
        return config

    @classmethod
    def from_file(cls, path: str) -> "GeneratorConfig":
        """Load configuration from JSON file."""
        with open(path) as f:
            data = json.load(f)
        return cls.from_dict(data)

    def validate(self) -> None:
        """Raise ValueError on settings the generator cannot run with."""
        if int(self.input.keep_one_out_of) < 1:
            raise ValueError(f"keep_one_out_of must be >= 1, got {self.input.keep_one_out_of}")
        for name in ("registration_failure", "storage_failure"):
            value = getattr(self.errors, name)
            if value not in ("skip", "abort"):
                raise ValueError(f"errors.{name} must be 'skip' or 'abort', got {value!r}")

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {name: asdict(getattr(self, name)) for name in self.SECTIONS}

    def save(self, path: str):
        """Save configuration to JSON file."""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


# Default config file locations
DEFAULT_CONFIG_PATHS = [
    "/etc/scan-odometry/generator.json",
    os.path.expanduser("~/.config/scan-odometry/generator.json"),
    "./generator_config.json",
]


def load_config(path: Optional[str] = None) -> GeneratorConfig:
    """Load configuration from file or return defaults."""
    if path and os.path.exists(path):
        return GeneratorConfig.from_file(path)

    for p in DEFAULT_CONFIG_PATHS:
        if os.path.exists(p):
            return GeneratorConfig.from_file(p)

    return GeneratorConfig()
