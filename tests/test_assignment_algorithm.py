import random

import pytest

from conftest import make_circuit, make_juggler
from jugglefest.juggler_assignment_algorithm import (
    CircuitRoster,
    EntityStore,
    FallbackSearch,
    JugglerAssignmentAlgorithm,
    TryPreference,
    UnplaceableJugglerError,
    find_stability_violations,
    format_circuit_line,
)


def _rosters(algorithm):
    return {name: roster.juggler_names() for name, roster in algorithm.rosters.items()}


def test_example_matches_known_solution(example_records, quiet_config):
    jugglers, circuits = example_records
    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)
    assignments, stats = algorithm.solve()

    assert [a.circuit.name for a in assignments] == ["C0", "C1", "C2"]
    assert _rosters(algorithm) == {
        "C0": ["J5", "J11", "J2", "J4"],
        "C1": ["J9", "J8", "J7", "J1"],
        "C2": ["J6", "J3", "J10", "J0"],
    }
    assert stats["circuit_capacity"] == 4
    assert stats["total_slots"] == 12
    assert stats["total_evictions"] == 3
    assert stats["total_requests"] == 15
    assert stats["placements_by_preference_rank"] == {"1": 9, "2": 2, "3": 1}
    assert stats["fallback_placements"] == 0
    assert stats["stability_violations"] == 0


def test_example_roster_lines(example_records, quiet_config):
    jugglers, circuits = example_records
    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)
    assignments, _ = algorithm.solve()

    lines = [format_circuit_line(algorithm.store, a) for a in assignments]
    assert lines[2] == (
        "C2 J6 C2:128 C1:31 C0:188,J3 C2:120 C0:171 C1:31,"
        "J10 C0:120 C2:86 C1:21,J0 C2:83 C0:104 C1:17"
    )


def test_rosters_stay_bounded_and_sorted_between_assignments(example_records, quiet_config):
    jugglers, circuits = example_records
    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)

    for juggler in algorithm.store.iter_jugglers():
        algorithm.assign(juggler.name)
        for roster in algorithm.rosters.values():
            scores = [e.score for e in roster.entries]
            assert len(scores) <= algorithm.store.capacity
            assert scores == sorted(scores, reverse=True)
        # Every juggler assigned so far sits in exactly one roster
        placed = [n for r in algorithm.rosters.values() for n in r.juggler_names()]
        assert len(placed) == len(set(placed)) == len(algorithm.placements)


def test_solve_is_deterministic(example_records, quiet_config):
    jugglers, circuits = example_records
    first = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)
    second = JugglerAssignmentAlgorithm(list(reversed(jugglers)), circuits, config=quiet_config)
    first.solve()
    second.solve()

    assert _rosters(first) == _rosters(second)


def test_displaced_juggler_moves_to_next_preference(quiet_config):
    circuits = [make_circuit("A", 1, 0, 0), make_circuit("B", 0, 1, 0)]
    jugglers = [
        make_juggler("J1", 1, 0, 0, ["A", "B"]),
        make_juggler("J2", 5, 0, 0, ["A"]),
        make_juggler("J3", 6, 0, 0, ["A"]),
        make_juggler("J4", 0, 3, 0, ["B"]),
    ]
    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)
    algorithm.solve()

    assert _rosters(algorithm) == {"A": ["J3", "J2"], "B": ["J4", "J1"]}
    assert algorithm.placement_of("J1") == "B"


def test_displaced_juggler_rejected_everywhere_preferred_uses_fallback(quiet_config):
    circuits = [make_circuit("A", 1, 0, 0), make_circuit("B", 0, 1, 0)]
    jugglers = [
        make_juggler("J1", 1, 0, 0, ["A"]),
        make_juggler("J2", 5, 0, 0, ["A"]),
        make_juggler("J3", 6, 0, 0, ["A"]),
        make_juggler("J4", 0, 3, 0, ["B"]),
    ]
    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)
    assignments, stats = algorithm.solve()

    assert algorithm.placement_of("J1") == "B"
    assert stats["fallback_placements"] == 1
    line = format_circuit_line(algorithm.store, assignments[1])
    assert line == "B J4 B:3,J1 A:1 (B:0)"


def test_equal_fit_goes_to_stronger_preference(quiet_config):
    circuits = [make_circuit("A", 1, 0, 0), make_circuit("B", 0, 0, 1)]
    jugglers = [
        make_juggler("J1", 2, 0, 0, ["B", "A"]),
        make_juggler("J2", 2, 0, 0, ["A"]),
        make_juggler("J3", 0, 0, 5, ["B"]),
        make_juggler("J4", 0, 0, 4, ["B"]),
    ]
    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)
    algorithm.solve()

    assert algorithm.roster("A").juggler_names() == ["J2", "J1"]


def test_empty_preferences_go_straight_to_fallback(quiet_config):
    circuits = [make_circuit("A", 1, 0, 0), make_circuit("B", 0, 1, 0)]
    jugglers = [make_juggler("J1", 5, 0, 0), make_juggler("J2", 0, 5, 0)]
    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)

    assert algorithm.assign("J1") == "A"
    assert algorithm.fallback_count == 1
    assert algorithm.assign("J2") == "B"
    assert algorithm.fallback_count == 2


def test_fallback_prefers_earliest_position_then_higher_score(quiet_config):
    circuits = [make_circuit("A", 1, 0, 0), make_circuit("B", 0, 1, 0), make_circuit("C", 0, 0, 1)]
    jugglers = [
        make_juggler("J1", 9, 0, 0, ["A"]),
        make_juggler("J2", 0, 0, 1, ["C"]),
        make_juggler("J3", 0, 0, 0, ["B"]),
        make_juggler("J4", 4, 0, 3),
        make_juggler("J5"),
        make_juggler("J6"),
    ]
    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)
    for name in ["J1", "J2", "J3"]:
        algorithm.assign(name)

    # J4 would land second in A and in B but first in C, ahead of J2 (1.5)
    assert algorithm.assign("J4") == "C"
    assert algorithm.roster("C").juggler_names() == ["J4", "J2"]


def test_fallback_full_tie_uses_store_order(quiet_config):
    circuits = [make_circuit("B", 1, 1, 1), make_circuit("A", 1, 1, 1)]
    jugglers = [make_juggler("J1", 1, 1, 1), make_juggler("J2", 1, 1, 1)]
    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)

    assert algorithm.assign("J1") == "A"


def test_fallback_equal_position_prefers_higher_raw_score(quiet_config):
    circuits = [make_circuit("A", 1, 0, 0), make_circuit("B", 0, 1, 0)]
    jugglers = [make_juggler("J1", 2, 3, 0), make_juggler("J2")]
    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)

    assert algorithm.assign("J1") == "B"


def test_bump_from_unpreferred_circuit_repeats_fallback(quiet_config):
    circuits = [make_circuit("A", 1, 0, 0), make_circuit("B", 0, 1, 0)]
    jugglers = [make_juggler("J1", 2, 1, 0), make_juggler("J2", 3, 0, 0, ["A"])]
    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)

    assert algorithm.assign("J1") == "A"
    assert algorithm.assign("J2") == "A"
    assert algorithm.placement_of("J1") == "B"
    assert algorithm.eviction_count == 1
    assert algorithm.fallback_count == 2


def test_explicit_requests(quiet_config):
    circuits = [make_circuit("A", 1, 0, 0), make_circuit("B", 0, 1, 0)]
    jugglers = [make_juggler("J1", 1, 1, 0, ["A", "B"]), make_juggler("J2", 0, 1, 0)]
    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)

    assert algorithm.assign("J1", TryPreference("J1", 1)) == "B"
    assert algorithm.assign("J2", FallbackSearch("J2")) == "A"


def test_population_above_capacity_is_fatal(quiet_config):
    circuits = [make_circuit("A", 1, 0, 0), make_circuit("B", 0, 1, 0)]
    jugglers = [
        make_juggler("J1", 1, 0, 0, ["A"]),
        make_juggler("J2", 0, 1, 0, ["B"]),
        make_juggler("J3", 1, 1, 0, ["A", "B"]),
    ]
    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)

    with pytest.raises(UnplaceableJugglerError) as excinfo:
        algorithm.solve()
    assert excinfo.value.juggler_name in {"J1", "J2", "J3"}


def test_stability_audit_flags_blocking_pair():
    circuits = [make_circuit("A", 1, 0, 0), make_circuit("B", 0, 1, 0)]
    jugglers = [make_juggler("J1", 1, 0, 0, ["A"]), make_juggler("J2", 5, 0, 0, ["A", "B"])]
    store = EntityStore(jugglers, circuits)
    rosters = {c.name: CircuitRoster(c, store) for c in store.iter_circuits()}
    rosters["A"].try_insert("J1", 1.5)
    rosters["B"].try_insert("J2", 0.33)

    violations = find_stability_violations(store, rosters)

    assert len(violations) == 1
    assert violations[0].juggler_name == "J2"
    assert violations[0].assigned_circuit == "B"
    assert violations[0].preferred_circuit == "A"


@pytest.mark.parametrize("seed", range(200))
def test_random_instances_are_stable_and_complete(seed, quiet_config):
    rng = random.Random(seed)
    circuit_names = [f"C{i}" for i in range(rng.randint(1, 5))]
    circuits = [
        make_circuit(n, rng.randint(0, 10), rng.randint(0, 10), rng.randint(0, 10))
        for n in circuit_names
    ]
    jugglers = [
        make_juggler(
            f"J{i}",
            rng.randint(0, 10),
            rng.randint(0, 10),
            rng.randint(0, 10),
            # Short or empty preference lists force fallback placements
            rng.sample(circuit_names, rng.randint(0, min(2, len(circuit_names)))),
        )
        for i in range(len(circuits) * rng.randint(1, 6))
    ]
    algorithm = JugglerAssignmentAlgorithm(jugglers, circuits, config=quiet_config)
    _, stats = algorithm.solve()

    assert stats["stability_violations"] == 0
    assert find_stability_violations(algorithm.store, algorithm.rosters) == []
    assert sorted(algorithm.placements) == sorted(j.name for j in jugglers)
    for roster in algorithm.rosters.values():
        assert len(roster) == algorithm.store.capacity
