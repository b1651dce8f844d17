"""
Preprocessing of raw Jugglefest records into the JSON format required by the
circuit assignment algorithm.

The raw format has one record per line:

    C C0 H:7 E:7 P:10
    J J0 H:3 E:9 P:2 C2,C0,C1

Circuit lines start with "C", juggler lines with "J". A juggler line ends with
its comma-separated circuit preferences, most preferred first. Input can come
from a local file or from an HTTP(S) URL.

Records are validated with Pydantic models (non-negative ratings, unique names,
preferences that point at known circuits) before being written to
`data/processed/jugglefest.json`.
"""

from __future__ import annotations

import os
import re
import json
import logging
from typing import Optional, List
from dataclasses import dataclass

import requests
from pydantic import BaseModel, Field, model_validator
from dotenv import load_dotenv

from jugglefest.utils import _is_url, _project_root

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

CIRCUIT_LINE = re.compile(r"^C (\S+) H:(\d{1,2}) E:(\d{1,2}) P:(\d{1,2})(?:\s.*)?$")
JUGGLER_LINE = re.compile(r"^J (\S+) H:(\d{1,2}) E:(\d{1,2}) P:(\d{1,2})(?:\s+(\S+))?(?:\s.*)?$")


class CircuitInfo(BaseModel):
    """A single circuit and its ratings."""

    name: str = Field(description="Unique circuit name, e.g. C0")
    hand_eye: int = Field(ge=0, description="Hand-to-eye coordination rating (H)")
    endurance: int = Field(ge=0, description="Endurance rating (E)")
    pizzazz: int = Field(ge=0, description="Pizzazz rating (P)")


class JugglerInfo(BaseModel):
    """A single juggler, its ratings and its circuit preferences."""

    name: str = Field(description="Unique juggler name, e.g. J0")
    hand_eye: int = Field(ge=0, description="Hand-to-eye coordination rating (H)")
    endurance: int = Field(ge=0, description="Endurance rating (E)")
    pizzazz: int = Field(ge=0, description="Pizzazz rating (P)")
    preferred_circuits: list[str] = Field(
        default_factory=list, description="Circuit names, most preferred first"
    )


class JugglefestData(BaseModel):
    """All circuits and jugglers of one Jugglefest."""

    circuits: list[CircuitInfo] = Field(description="List of circuits")
    jugglers: list[JugglerInfo] = Field(description="List of jugglers")

    @model_validator(mode="after")
    def _check_references(self) -> "JugglefestData":
        circuit_names = [c.name for c in self.circuits]
        known = set(circuit_names)
        if len(known) != len(circuit_names):
            raise ValueError("Duplicate circuit names in input")

        juggler_names = [j.name for j in self.jugglers]
        if len(set(juggler_names)) != len(juggler_names):
            raise ValueError("Duplicate juggler names in input")

        for juggler in self.jugglers:
            unknown = [c for c in juggler.preferred_circuits if c not in known]
            if unknown:
                raise ValueError(f"Juggler {juggler.name} prefers unknown circuits: {unknown}")
        return self


@dataclass
class PreprocessingConfig:
    """Configuration for the preprocessing pipeline."""

    request_timeout: float = float(os.environ.get("JUGGLEFEST_HTTP_TIMEOUT", "30"))


def parse_jugglefest_text(text: str) -> JugglefestData:
    """Parse raw Jugglefest lines into validated records.

    Raises ValueError on any non-blank line that is not a well-formed circuit
    or juggler record.
    """
    circuits: List[CircuitInfo] = []
    jugglers: List[JugglerInfo] = []

    for line_number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue

        if line.startswith("C"):
            match = CIRCUIT_LINE.match(line)
            if match is None:
                raise ValueError(f"Bad circuit record on line {line_number}: {line}")
            name, h, e, p = match.groups()
            circuits.append(
                CircuitInfo(name=name, hand_eye=int(h), endurance=int(e), pizzazz=int(p))
            )
        elif line.startswith("J"):
            match = JUGGLER_LINE.match(line)
            if match is None:
                raise ValueError(f"Bad juggler record on line {line_number}: {line}")
            name, h, e, p, preferences = match.groups()
            jugglers.append(
                JugglerInfo(
                    name=name,
                    hand_eye=int(h),
                    endurance=int(e),
                    pizzazz=int(p),
                    preferred_circuits=preferences.split(",") if preferences else [],
                )
            )
        else:
            raise ValueError(
                f'Bad data on line {line_number} - expected "C ..." or "J ...", got {line}'
            )

    logger.debug("Parsed %d circuits and %d jugglers", len(circuits), len(jugglers))
    return JugglefestData(circuits=circuits, jugglers=jugglers)


def read_source(source: str, config: Optional[PreprocessingConfig] = None) -> str:
    """Return the raw text of a local file or an HTTP(S) URL."""
    if config is None:
        config = PreprocessingConfig()

    if _is_url(source):
        logger.info("Fetching Jugglefest input from %s", source)
        response = requests.get(source, timeout=config.request_timeout)
        response.raise_for_status()
        return response.text

    logger.info("Reading Jugglefest input from %s", source)
    with open(source, "r", encoding="utf-8") as f:
        return f.read()


def preprocess_file(
    input_path: str,
    processed_dir: str = "data/processed",
    config: Optional[PreprocessingConfig] = None,
) -> str:
    """
    Parse a raw Jugglefest file (or URL) and save it as validated JSON.

    Args:
        input_path: Path or URL of the raw Jugglefest records
        processed_dir: Directory to save the processed JSON file
        config: Optional preprocessing configuration

    Returns:
        Path of the processed JSON file
    """
    if not os.path.isabs(processed_dir):
        processed_dir = os.path.join(_project_root(), processed_dir)
    os.makedirs(processed_dir, exist_ok=True)

    logger.info("Starting preprocessing")
    raw = read_source(input_path, config)
    logger.debug("Loaded input: %d chars", len(raw))

    data = parse_jugglefest_text(raw)
    if not data.circuits:
        logger.error("No circuits were found in the input")
        raise ValueError("No circuits were found in the input")
    logger.info("Extracted %d circuits and %d jugglers", len(data.circuits), len(data.jugglers))

    out_path = os.path.join(processed_dir, "jugglefest.json")
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(data.model_dump(), f, indent=2)

    logger.info("Preprocessing completed successfully: %s", out_path)
    return out_path


def main():
    """Command-line interface for preprocessing."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Parse raw Jugglefest records into validated JSON"
    )
    parser.add_argument(
        "--input",
        default=os.environ.get("JUGGLEFEST_SOURCE"),
        help="Path or URL of the raw Jugglefest file (default: $JUGGLEFEST_SOURCE)",
    )
    parser.add_argument(
        "--processed-dir",
        default="data/processed",
        help="Output directory for the processed JSON file",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Timeout in seconds when fetching the input over HTTP",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging level",
    )

    args = parser.parse_args()
    if not args.input:
        parser.error("--input is required unless JUGGLEFEST_SOURCE is set")

    # Configure logging
    numeric_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )

    config = PreprocessingConfig()
    if args.timeout is not None:
        config.request_timeout = args.timeout

    try:
        out_path = preprocess_file(args.input, processed_dir=args.processed_dir, config=config)
        print(json.dumps({"processed_path": out_path, "status": "success"}, indent=2))
    except Exception as e:
        logger.exception("Preprocessing failed")
        print(json.dumps({"error": str(e), "status": "failed"}, indent=2))
        raise SystemExit(1)


if __name__ == "__main__":
    main()
