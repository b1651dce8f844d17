"""
Circuit Assignment Algorithm for Jugglefest

Assigns every juggler to a circuit, honoring each juggler's preference order
while keeping every circuit at the same capacity and never letting a juggler
hold a slot that a better-fit juggler who prefers that circuit more is missing.

Reads either the processed JSON written by `jugglefest.preprocess_data` or a
raw Jugglefest file/URL (preprocessed on the fly).

Writes results to `data/outputs/assignment_results.{txt,json,md}`.
"""

from typing import List, Dict, Tuple, Optional, Any, Iterator, Union
from dataclasses import dataclass, field
from collections import defaultdict, deque
import json
import argparse
import sys
import logging
import os
import time
import tqdm
from jugglefest.utils import (
    _ensure_data_dirs,
    _is_url,
    _name_sort_key,
    _project_root,
    _resolve_path,
    _to_json_compatible,
)
import matplotlib.pyplot as plt


@dataclass
class AlgorithmConfig:
    """Configuration for the circuit assignment algorithm."""

    SHOW_PROGRESS: bool = True
    PLOT_PLACEMENTS: bool = True


class UnplaceableJugglerError(RuntimeError):
    """No circuit has room for a juggler; the run cannot complete."""

    def __init__(self, juggler_name: str):
        super().__init__(f"{juggler_name} needs a new hobby (failed all circuits)!")
        self.juggler_name = juggler_name


@dataclass(frozen=True)
class Circuit:
    name: str
    hand_eye: int
    endurance: int
    pizzazz: int

    def __repr__(self):
        return f"Circuit({self.name}, H={self.hand_eye}, E={self.endurance}, P={self.pizzazz})"


@dataclass(frozen=True)
class Juggler:
    name: str
    hand_eye: int
    endurance: int
    pizzazz: int
    preferred_circuits: Tuple[str, ...] = ()

    def __repr__(self):
        return f"Juggler({self.name}, prefs={list(self.preferred_circuits)})"

    def preference_rank(self, circuit_name: str) -> Optional[int]:
        """Zero-based position of the circuit in this juggler's preferences, or None."""
        try:
            return self.preferred_circuits.index(circuit_name)
        except ValueError:
            return None


def dot_product(juggler: Juggler, circuit: Circuit) -> int:
    """Raw fit of a juggler for a circuit."""
    return (
        juggler.hand_eye * circuit.hand_eye
        + juggler.endurance * circuit.endurance
        + juggler.pizzazz * circuit.pizzazz
    )


def weighted_dot_product(juggler: Juggler, circuit: Circuit) -> float:
    """
    Raw fit plus a bonus in (0, 1) that shrinks with the circuit's preference rank.

    Equally suited jugglers are ordered by how strongly they want the circuit,
    while any difference in raw fit still dominates.
    """
    rank = juggler.preference_rank(circuit.name)
    if rank is None:
        raise ValueError(f"{juggler.name} has no preference for circuit {circuit.name}")
    bonus = 1.0 - (rank + 1.0) / (len(juggler.preferred_circuits) + 1.0)
    return dot_product(juggler, circuit) + bonus


@dataclass(frozen=True)
class TryPreference:
    """Try the juggler's preferences starting at `index`."""

    juggler_name: str
    index: int


@dataclass(frozen=True)
class FallbackSearch:
    """Place the juggler wherever it ranks best by raw fit."""

    juggler_name: str


AssignmentRequest = Union[TryPreference, FallbackSearch]


def request_from_index(juggler: Juggler, index: int) -> AssignmentRequest:
    """Build the request for a preference index, falling back once preferences run out."""
    if index < len(juggler.preferred_circuits):
        return TryPreference(juggler.name, index)
    return FallbackSearch(juggler.name)


class EntityStore:
    """
    All jugglers and circuits of a run, keyed by name.

    Iteration follows natural name order (trailing numbers compared by value).
    Capacity is floor(jugglers / circuits) and is the same for every circuit.
    """

    def __init__(self, jugglers: List[Juggler], circuits: List[Circuit]):
        if not circuits:
            raise ValueError("At least one circuit is required")

        self.jugglers: Dict[str, Juggler] = {}
        for juggler in sorted(jugglers, key=lambda j: _name_sort_key(j.name)):
            if juggler.name in self.jugglers:
                raise ValueError(f"Duplicate juggler name {juggler.name}")
            self.jugglers[juggler.name] = juggler

        self.circuits: Dict[str, Circuit] = {}
        for circuit in sorted(circuits, key=lambda c: _name_sort_key(c.name)):
            if circuit.name in self.circuits:
                raise ValueError(f"Duplicate circuit name {circuit.name}")
            self.circuits[circuit.name] = circuit

        for juggler in self.jugglers.values():
            for circuit_name in juggler.preferred_circuits:
                if circuit_name not in self.circuits:
                    raise ValueError(f"{juggler.name} prefers unknown circuit {circuit_name}")

    @property
    def capacity(self) -> int:
        return len(self.jugglers) // len(self.circuits)

    def juggler(self, name: str) -> Juggler:
        return self.jugglers[name]

    def circuit(self, name: str) -> Circuit:
        return self.circuits[name]

    def iter_jugglers(self) -> Iterator[Juggler]:
        return iter(self.jugglers.values())

    def iter_circuits(self) -> Iterator[Circuit]:
        return iter(self.circuits.values())


@dataclass
class RosterEntry:
    juggler_name: str
    score: float


@dataclass
class InsertOutcome:
    inserted: bool
    position: Optional[int] = None
    evicted: Optional[AssignmentRequest] = None


class CircuitRoster:
    """Capacity-bounded roster of one circuit, kept in descending score order."""

    def __init__(self, circuit: Circuit, store: EntityStore):
        self.circuit = circuit
        self.store = store
        self.entries: List[RosterEntry] = []

    def __len__(self):
        return len(self.entries)

    def __repr__(self):
        return f"CircuitRoster({self.circuit.name}, {[e.juggler_name for e in self.entries]})"

    def juggler_names(self) -> List[str]:
        return [e.juggler_name for e in self.entries]

    def fits_at(self, score: float) -> Optional[int]:
        """Position a juggler with `score` would take, or None if it doesn't qualify."""
        for i in range(self.store.capacity):
            if i >= len(self.entries):
                return len(self.entries)
            # Ties keep the incumbent
            if score > self.entries[i].score:
                return i
        return None

    def try_insert(self, juggler_name: str, score: float) -> InsertOutcome:
        """
        Insert the juggler if its score earns a slot.

        When the roster overflows, the poorest fit is removed and returned as a
        reassignment request: its next preference if it wanted this circuit,
        a fallback search otherwise.
        """
        position = self.fits_at(score)
        if position is None:
            return InsertOutcome(inserted=False)

        self.entries.insert(position, RosterEntry(juggler_name, score))
        logging.debug(f"{juggler_name} inserted into {self.circuit.name} at {position} ({score:.3f})")

        evicted = None
        if len(self.entries) > self.store.capacity:
            bumped = self.entries.pop()
            bumped_juggler = self.store.juggler(bumped.juggler_name)
            rank = bumped_juggler.preference_rank(self.circuit.name)
            if rank is None:
                evicted = FallbackSearch(bumped_juggler.name)
            else:
                evicted = request_from_index(bumped_juggler, rank + 1)
            logging.debug(f"{bumped.juggler_name} bumped from {self.circuit.name} by {juggler_name}")

        return InsertOutcome(inserted=True, position=position, evicted=evicted)


@dataclass
class StabilityViolation:
    juggler_name: str
    assigned_circuit: str
    preferred_circuit: str
    details: str


@dataclass
class CircuitAssignment:
    circuit: Circuit
    entries: List[RosterEntry] = field(default_factory=list)

    def __repr__(self):
        return f"CircuitAssignment({self.circuit.name}, jugglers={[e.juggler_name for e in self.entries]})"


def find_stability_violations(
    store: EntityStore, rosters: Dict[str, CircuitRoster]
) -> List[StabilityViolation]:
    """
    Report every juggler that would be a better fit for a circuit it prefers
    over its assignment than that circuit's poorest occupant (or that would
    find a free slot there).
    """
    placements = {
        name: circuit_name
        for circuit_name, roster in rosters.items()
        for name in roster.juggler_names()
    }
    violations: List[StabilityViolation] = []

    for juggler in store.iter_jugglers():
        assigned = placements.get(juggler.name)
        if assigned is None:
            continue
        rank = juggler.preference_rank(assigned)
        better = juggler.preferred_circuits if rank is None else juggler.preferred_circuits[:rank]

        for circuit_name in better:
            roster = rosters[circuit_name]
            score = weighted_dot_product(juggler, store.circuit(circuit_name))
            if len(roster) < store.capacity:
                details = f"{circuit_name} has a free slot"
            elif score > roster.entries[-1].score:
                details = (
                    f"scores {score:.3f} for {circuit_name}, above "
                    f"{roster.entries[-1].juggler_name} ({roster.entries[-1].score:.3f})"
                )
            else:
                continue
            violations.append(
                StabilityViolation(
                    juggler_name=juggler.name,
                    assigned_circuit=assigned,
                    preferred_circuit=circuit_name,
                    details=details,
                )
            )

    return violations


class JugglerAssignmentAlgorithm:
    """
    Algorithm to assign jugglers to circuits by preference and fit.

    Each juggler walks its preference list until a circuit admits it. Admitting
    a juggler into a full circuit bumps the poorest fit, which is queued to
    continue from its next preference. Jugglers who qualify for none of their
    preferences are placed wherever they rank best by raw fit.
    """

    def __init__(
        self,
        jugglers: List[Juggler],
        circuits: List[Circuit],
        config: AlgorithmConfig = AlgorithmConfig(),
    ):
        self.store = EntityStore(jugglers, circuits)
        self.config = config
        self.rosters: Dict[str, CircuitRoster] = {
            c.name: CircuitRoster(c, self.store) for c in self.store.iter_circuits()
        }

        # Juggler name -> circuit name, for placed jugglers only
        self.placements: Dict[str, str] = {}

        self.eviction_count = 0
        self.request_count = 0
        self.fallback_count = 0

    def roster(self, circuit_name: str) -> CircuitRoster:
        return self.rosters[circuit_name]

    def placement_of(self, juggler_name: str) -> Optional[str]:
        return self.placements.get(juggler_name)

    def _insert(self, juggler_name: str, circuit_name: str, score: float) -> InsertOutcome:
        outcome = self.rosters[circuit_name].try_insert(juggler_name, score)
        if outcome.inserted:
            self.placements[juggler_name] = circuit_name
            if outcome.evicted is not None:
                self.placements.pop(outcome.evicted.juggler_name, None)
                self.eviction_count += 1
        return outcome

    def _best_fallback_circuit(self, juggler: Juggler) -> Optional[Circuit]:
        """
        Circuit where the juggler would take the earliest roster position by raw
        fit. Equal positions go to the higher raw score, then to the earlier
        circuit in store order.
        """
        best: Optional[Tuple[int, int, Circuit]] = None  # (position, score, circuit)
        for circuit in self.store.iter_circuits():
            score = dot_product(juggler, circuit)
            position = self.rosters[circuit.name].fits_at(score)
            if position is None:
                continue
            if best is None or position < best[0] or (position == best[0] and score > best[1]):
                best = (position, score, circuit)
        return best[2] if best is not None else None

    def _handle_request(self, request: AssignmentRequest) -> Optional[AssignmentRequest]:
        """Place one juggler; return the request for whoever it bumped, if anyone."""
        juggler = self.store.juggler(request.juggler_name)

        if isinstance(request, TryPreference):
            for index in range(request.index, len(juggler.preferred_circuits)):
                circuit = self.store.circuit(juggler.preferred_circuits[index])
                outcome = self._insert(
                    juggler.name, circuit.name, weighted_dot_product(juggler, circuit)
                )
                if outcome.inserted:
                    return outcome.evicted

        # Preferences exhausted, or the juggler was bumped from an unpreferred circuit
        circuit = self._best_fallback_circuit(juggler)
        if circuit is None:
            logging.error(f"No circuit has room for {juggler.name}")
            raise UnplaceableJugglerError(juggler.name)

        logging.debug(f"{juggler.name} placed by fallback search into {circuit.name}")
        self.fallback_count += 1
        outcome = self._insert(juggler.name, circuit.name, dot_product(juggler, circuit))
        if not outcome.inserted:
            raise UnplaceableJugglerError(juggler.name)
        return outcome.evicted

    def assign(self, juggler_name: str, request: Optional[AssignmentRequest] = None) -> str:
        """
        Place a juggler and settle every bump it triggers.

        Returns the circuit the juggler ends up in. Raises
        UnplaceableJugglerError if some juggler in the cascade fits nowhere.
        """
        if request is None:
            request = request_from_index(self.store.juggler(juggler_name), 0)

        pending = deque([request])
        while pending:
            current = pending.popleft()
            self.request_count += 1
            bumped = self._handle_request(current)
            if bumped is not None:
                pending.append(bumped)

        return self.placements[juggler_name]

    def solve(self) -> Tuple[List[CircuitAssignment], Dict[str, Any]]:
        """
        Assign every juggler once, in store order, and collect statistics.

        Returns the final roster of every circuit and a stats dictionary.
        """
        started = time.perf_counter()
        logging.info(
            f"Assigning {len(self.store.jugglers)} jugglers to {len(self.store.circuits)} "
            f"circuits (capacity {self.store.capacity})..."
        )

        bar = tqdm.tqdm(
            list(self.store.iter_jugglers()),
            desc="Assigning jugglers",
            disable=not self.config.SHOW_PROGRESS,
        )
        for juggler in bar:
            self.assign(juggler.name)
            bar.set_postfix(bumps=self.eviction_count)

        elapsed = time.perf_counter() - started

        violations = find_stability_violations(self.store, self.rosters)
        for v in violations:
            logging.warning(f"Unstable placement for {v.juggler_name}: {v.details}")

        assignments = [
            CircuitAssignment(circuit=roster.circuit, entries=list(roster.entries))
            for roster in self.rosters.values()
        ]

        stats: Dict[str, Any] = {
            "total_circuits": len(self.store.circuits),
            "total_jugglers": len(self.store.jugglers),
            "circuit_capacity": self.store.capacity,
            "total_slots": self.store.capacity * len(self.store.circuits),
            "placements_by_preference_rank": self._count_placements_by_rank(),
            "fallback_placements": self._count_off_preference_placements(),
            "fallback_searches": self.fallback_count,
            "total_evictions": self.eviction_count,
            "total_requests": self.request_count,
            "stability_violations": len(violations),
            "elapsed_seconds": elapsed,
        }

        return assignments, stats

    def _count_placements_by_rank(self) -> Dict[str, int]:
        """Count placed jugglers by the 1-based rank of their circuit ("fallback" if unpreferred)."""
        counts = defaultdict(int)
        for juggler_name, circuit_name in self.placements.items():
            rank = self.store.juggler(juggler_name).preference_rank(circuit_name)
            counts["fallback" if rank is None else str(rank + 1)] += 1
        return dict(sorted(counts.items(), key=lambda kv: _name_sort_key(kv[0])))

    def _count_off_preference_placements(self) -> int:
        return sum(
            1
            for juggler_name, circuit_name in self.placements.items()
            if self.store.juggler(juggler_name).preference_rank(circuit_name) is None
        )


def format_circuit_line(store: EntityStore, assignment: CircuitAssignment) -> str:
    """
    Render one circuit as `C0 J1 C0:10 C2:31,J5 C1:8 (C0:6)`.

    Each juggler lists its raw fit for every preferred circuit; a juggler placed
    outside its preferences also shows its raw fit for this circuit in parentheses.
    """
    circuit = assignment.circuit
    rendered: List[str] = []
    for entry in assignment.entries:
        juggler = store.juggler(entry.juggler_name)
        parts = [juggler.name]
        for circuit_name in juggler.preferred_circuits:
            parts.append(f"{circuit_name}:{dot_product(juggler, store.circuit(circuit_name))}")
        if juggler.preference_rank(circuit.name) is None:
            parts.append(f"({circuit.name}:{dot_product(juggler, circuit)})")
        rendered.append(" ".join(parts))
    return f"{circuit.name} " + ",".join(rendered)


def load_preprocessed_data(filename: str) -> Tuple[List[Juggler], List[Circuit]]:
    """Load jugglers and circuits from a processed JSON file."""
    from jugglefest.preprocess_data import JugglefestData

    with open(filename, "r") as f:
        data = json.load(f)
    return _records_from_data(JugglefestData(**data))


def _records_from_data(data) -> Tuple[List[Juggler], List[Circuit]]:
    circuits = [Circuit(**c.model_dump()) for c in data.circuits]
    jugglers = []
    for info in data.jugglers:
        fields = info.model_dump()
        fields["preferred_circuits"] = tuple(fields["preferred_circuits"])
        jugglers.append(Juggler(**fields))
    return jugglers, circuits


def _load_or_preprocess_data(input_path: str) -> Tuple[List[Juggler], List[Circuit]]:
    """Load processed JSON, or parse a raw Jugglefest file/URL."""
    if not _is_url(input_path):
        try:
            logging.info(f"Attempting to load processed data from {input_path}")
            return load_preprocessed_data(input_path)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logging.info("Input file not in expected JSON format. Preprocessing...")

    from jugglefest.preprocess_data import preprocess_file

    processed_dir = os.path.join(_project_root(), "data/processed")
    processed_path = preprocess_file(input_path, processed_dir=processed_dir)
    logging.info(f"Loading processed data from {processed_path}")
    return load_preprocessed_data(processed_path)


def _save_results_text(
    store: EntityStore, assignments: List[CircuitAssignment], output_path: str
) -> None:
    """Save roster lines, one circuit per line."""
    lines = [format_circuit_line(store, a) for a in assignments]
    with open(output_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")


def _save_results_markdown(
    store: EntityStore,
    assignments: List[CircuitAssignment],
    output_path: str,
    stats: Optional[Dict[str, Any]] = None,
) -> None:
    """Save a human-readable Markdown summary of circuit rosters."""
    lines: List[str] = []

    if stats is not None:
        lines.append("Summary:")
        lines.append(f"- Circuits: {stats.get('total_circuits', 0)}")
        lines.append(f"- Jugglers: {stats.get('total_jugglers', 0)}")
        lines.append(f"- Capacity per circuit: {stats.get('circuit_capacity', 0)}")
        lines.append(f"- Evictions: {stats.get('total_evictions', 0)}")
        lines.append(f"- Stability violations: {stats.get('stability_violations', 0)}")
        by_rank = stats.get("placements_by_preference_rank")
        if isinstance(by_rank, dict) and by_rank:
            lines.append("- Placements by preference rank:")
            for rank, count in by_rank.items():
                lines.append(f"  - {rank}: {count}")
        lines.append("")

    for assignment in assignments:
        circuit = assignment.circuit
        lines.append(f"{circuit.name} (H:{circuit.hand_eye} E:{circuit.endurance} P:{circuit.pizzazz}):")
        for entry in assignment.entries:
            juggler = store.juggler(entry.juggler_name)
            rank = juggler.preference_rank(circuit.name)
            choice = "not preferred" if rank is None else f"choice {rank + 1}"
            lines.append(f"  - {juggler.name} ({choice}, score {entry.score:.3f})")
        lines.append("")

    with open(output_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines).strip() + "\n")


def _save_placement_plot(stats: Dict[str, Any], output_path: str) -> None:
    by_rank = stats.get("placements_by_preference_rank") or {}
    if not by_rank:
        return
    labels = list(by_rank.keys())
    counts = [by_rank[k] for k in labels]

    fig, ax = plt.subplots(figsize=(8, 4.5))
    ax.bar(labels, counts, color="#1f77b4")
    ax.set_title("Jugglers by preference rank of assigned circuit")
    ax.set_xlabel("Preference rank")
    ax.set_ylabel("Jugglers")
    ax.grid(True, axis="y", linestyle=":", alpha=0.5)
    fig.tight_layout()
    fig.savefig(output_path, dpi=150)
    plt.close(fig)


def main():
    """Main function with CLI support."""
    parser = argparse.ArgumentParser(
        description="Jugglefest Circuit Assignment - Assigns jugglers to circuits"
    )
    parser.add_argument(
        "--input",
        type=str,
        default=os.environ.get("JUGGLEFEST_SOURCE"),
        help="Path to processed JSON, or path/URL of a raw Jugglefest file (default: $JUGGLEFEST_SOURCE)",
    )
    parser.add_argument("--config", type=str, help="Path to JSON file with algorithm configuration")
    parser.add_argument(
        "--output-dir",
        type=str,
        help="Directory to write outputs (default: data/outputs under project root)",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable the progress bar",
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

    _ensure_data_dirs()

    # Load algorithm config if provided
    config = AlgorithmConfig()
    if args.config:
        try:
            with open(_resolve_path(args.config), "r") as f:
                config = AlgorithmConfig(**json.load(f))
            logging.info(f"Loaded algorithm configuration from {args.config}")
        except Exception as e:
            logging.error(f"Error loading configuration file: {e}", exc_info=True)
            sys.exit(1)

    if args.no_progress:
        config.SHOW_PROGRESS = False

    jugglers, circuits = _load_or_preprocess_data(_resolve_path(args.input))

    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=config)
    try:
        assignments, stats = algorithm.solve()
    except UnplaceableJugglerError as e:
        logging.error(
            f"Assignment failed: {e} ({len(jugglers)} jugglers, "
            f"{algorithm.store.capacity * len(circuits)} slots)"
        )
        sys.exit(1)

    output_dir = (
        _resolve_path(args.output_dir)
        if args.output_dir
        else os.path.join(_project_root(), "data/outputs")
    )
    os.makedirs(output_dir, exist_ok=True)

    text_path = os.path.join(output_dir, "assignment_results.txt")
    _save_results_text(algorithm.store, assignments, text_path)
    logging.info(f"Saved roster to {text_path}")

    results_path = os.path.join(output_dir, "assignment_results.json")
    with open(results_path, "w") as f:
        json.dump({"circuits": _to_json_compatible(assignments), "stats": stats}, f, indent=2)
    logging.info(f"Saved results to {results_path}")

    md_path = os.path.join(output_dir, "assignment_results.md")
    _save_results_markdown(algorithm.store, assignments, md_path, stats=stats)
    logging.info(f"Saved Markdown summary to {md_path}")

    if config.PLOT_PLACEMENTS:
        try:
            plot_path = os.path.join(output_dir, "placement_ranks.png")
            _save_placement_plot(stats, plot_path)
            logging.info(f"Saved placement plot to {plot_path}")
        except Exception as e:
            logging.warning(f"Failed to save placement plot: {e}")

    logging.info("=== Jugglefest Assignment Solution ===")
    logging.info(f"- Circuits: {stats['total_circuits']}")
    logging.info(f"- Jugglers: {stats['total_jugglers']}")
    logging.info(f"- Capacity per circuit: {stats['circuit_capacity']}")
    logging.info(f"- Placements by preference rank: {stats['placements_by_preference_rank']}")
    logging.info(f"- Evictions: {stats['total_evictions']}")
    logging.info(f"- Stability violations: {stats['stability_violations']}")
    logging.info(f"- Execution time: {stats['elapsed_seconds']:.3f} s")


if __name__ == "__main__":
    main()
