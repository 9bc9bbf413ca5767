from __future__ import annotations

from models import ExerciseDescriptor, ExerciseSettings

# Category specific defaults applied when an exercise does not define its own.
CATEGORY_DEFAULTS: dict[str, ExerciseSettings] = {
    "Weights": ExerciseSettings(sets=3, reps=10, weight=20),
    "Cardio": ExerciseSettings(time=10, distance=1),
    "Slide Board": ExerciseSettings(incline=0, sets=3, reps=10),
    "No Equipment": ExerciseSettings(time=30, sets=3, reps=10),
    "Bodyweight": ExerciseSettings(sets=3, reps=10),
}


class ExerciseCatalog:
    """Read side of the exercise library used to seed new sets."""

    def __init__(self, exercises: list[ExerciseDescriptor] | None = None) -> None:
        self._exercises: dict[str, ExerciseDescriptor] = {}
        for exercise in exercises or []:
            self.add(exercise)

    def add(self, exercise: ExerciseDescriptor) -> None:
        self._exercises[exercise.id] = exercise

    def add_exercise(
        self,
        exercise_id: str,
        name: str,
        category: str,
        settings: ExerciseSettings | dict | None = None,
    ) -> ExerciseDescriptor:
        """Register an exercise, filling unset settings from its category."""
        if settings is None:
            settings = self.default_settings_for(category)
        elif isinstance(settings, dict):
            settings = ExerciseSettings.model_validate(settings)
        exercise = ExerciseDescriptor(
            id=exercise_id, name=name, category=category, default_settings=settings
        )
        self.add(exercise)
        return exercise

    def get_exercise_by_id(self, exercise_id: str) -> ExerciseDescriptor | None:
        return self._exercises.get(exercise_id)

    def fetch_all(self) -> list[ExerciseDescriptor]:
        return list(self._exercises.values())

    @staticmethod
    def default_settings_for(category: str) -> ExerciseSettings:
        base = CATEGORY_DEFAULTS.get(category.strip())
        return base.model_copy() if base is not None else ExerciseSettings()
