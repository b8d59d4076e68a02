"""
Scene timing allocation.

Splits a narration's duration across scenes in proportion to how much text each
scene carries, keeping every scene on screen for a sensible amount of time.
"""

import math
from dataclasses import dataclass
from typing import List, Sequence, Union

from errors import InsufficientScenesError, SceneOrderError


@dataclass(frozen=True)
class SceneInput:
    """One scene as the pipeline sees it."""
    scene_number: int
    image: Union[str, bytes]
    word_count: int = 0


@dataclass(frozen=True)
class SceneTiming:
    scene_number: int
    start_seconds: float
    duration_seconds: float
    end_seconds: float


def count_words(text: str) -> int:
    return len(text.split()) if text else 0


def scene_weight(word_count: int) -> float:
    # Sub-linear so one long monologue cannot starve the other scenes.
    return max(1.0, math.sqrt(max(word_count, 0)))


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def _check_order(scenes: Sequence[SceneInput]):
    previous = None
    for scene in scenes:
        if previous is not None and scene.scene_number <= previous:
            raise SceneOrderError(
                f"Scene numbers must be unique and increasing: {scene.scene_number} follows {previous}"
            )
        previous = scene.scene_number


def allocate(
    scenes: Sequence[SceneInput],
    target_seconds: float,
    min_scene_seconds: float,
    max_scene_seconds: float,
) -> List[SceneTiming]:
    """
    Compute a contiguous timing plan covering exactly `target_seconds`.

    Durations start proportional to scene weight, are clamped to
    [min_scene_seconds, max_scene_seconds], get one proportional redistribution
    pass, and are finally normalized so they sum to the target. Normalization
    wins over the bounds when weights are extremely skewed.
    """
    if not scenes:
        raise InsufficientScenesError("At least one scene is required to build a timing plan.")
    if target_seconds <= 0:
        raise ValueError(f"Target duration must be positive, got {target_seconds}")
    if min_scene_seconds > max_scene_seconds:
        raise ValueError(
            f"min_scene_seconds ({min_scene_seconds}) exceeds max_scene_seconds ({max_scene_seconds})"
        )
    _check_order(scenes)

    weights = [scene_weight(scene.word_count) for scene in scenes]
    total_weight = sum(weights)
    initial = [weight / total_weight * target_seconds for weight in weights]

    clamped = [_clamp(d, min_scene_seconds, max_scene_seconds) for d in initial]
    adjustment = sum(clamped) - sum(initial)

    # Single redistribution pass; whatever drift is left is removed by normalizing.
    factor = 1.0 - adjustment / target_seconds
    redistributed = [
        _clamp(d * factor, min_scene_seconds, max_scene_seconds) for d in clamped
    ]

    current_total = sum(redistributed)
    if current_total <= 0:
        redistributed, current_total = initial, sum(initial)
    durations = [d * target_seconds / current_total for d in redistributed]

    plan = []
    start = 0.0
    elapsed = 0.0
    last_index = len(scenes) - 1
    for index, (scene, duration) in enumerate(zip(scenes, durations)):
        elapsed += duration
        end = target_seconds if index == last_index else elapsed
        plan.append(SceneTiming(
            scene_number=scene.scene_number,
            start_seconds=start,
            duration_seconds=end - start,
            end_seconds=end,
        ))
        start = end
    return plan
