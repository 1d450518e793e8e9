"""
DreamTrip 旅行計画バックエンド。
DreamTrip trip-planner backend: trip-limit admission control and the
conversation flow controller behind the planning chat.
"""

__version__ = "0.1.0"
