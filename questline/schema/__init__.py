"""ORM models; importing this package registers every table on `Base.metadata`."""

from questline.schema.jobs import AiJob
from questline.schema.progression import AchievementCatalogEntry, AchievementUnlock, AdventureQuest, Chapter, ChapterQuest, GameSession, PlayerRenown, QuestMissionOrder

__all__ = ["AchievementCatalogEntry", "AchievementUnlock", "AdventureQuest", "AiJob", "Chapter", "ChapterQuest", "GameSession", "PlayerRenown", "QuestMissionOrder"]
