"""
face_attendance: Offline-first face matching, enrollment and attendance sync.
"""

__version__ = "0.1.0"
