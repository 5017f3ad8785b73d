"""Command-line interface for face_attendance."""
