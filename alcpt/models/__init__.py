from alcpt.models.orm import Base, Question, Test, User, UserAnswer, UserProgress

__all__ = ["Base", "Question", "Test", "User", "UserAnswer", "UserProgress"]
