"""HTTP surface for StudyDB."""
