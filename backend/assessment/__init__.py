"""Assessment and progression engine.

This package exposes the models, repositories and engine services
behind the FastAPI application: rule-weighted MCQ sessions, the
day-gated daily test track and the timed grandtest. Individual modules
contain the concrete implementations and documentation.
"""
