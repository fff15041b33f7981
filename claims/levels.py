from .models import EcoLevel, LevelProgress


# Lowest point total of each level, in ascending order
LEVEL_FLOORS = (
    (EcoLevel.BEGINNER, 0),
    (EcoLevel.INTERMEDIATE, 100),
    (EcoLevel.ADVANCED, 250),
    (EcoLevel.EXPERT, 500),
    (EcoLevel.LEADER, 1000),
)


def level_for(points: int) -> EcoLevel:
    level = EcoLevel.BEGINNER
    for candidate, floor in LEVEL_FLOORS:
        if points >= floor:
            level = candidate
    return level


def level_progress(points: int) -> LevelProgress:
    current = level_for(points)
    levels = [level for level, _ in LEVEL_FLOORS]
    floors = dict(LEVEL_FLOORS)

    index = levels.index(current)
    if index == len(levels) - 1:
        return LevelProgress(next_level=None, points_to_next_level=None, progress_percentage=100.0)

    next_level = levels[index + 1]
    span = floors[next_level] - floors[current]
    percentage = round((points - floors[current]) / span * 100, 1)
    return LevelProgress(
        next_level=next_level,
        points_to_next_level=floors[next_level] - points,
        progress_percentage=percentage,
    )
