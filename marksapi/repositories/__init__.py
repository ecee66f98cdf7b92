from .marks_repository import MarksRepository
from .user_repository import UserRepository
