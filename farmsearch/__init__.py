# flake8: noqa
"""
Backend package for the farm question-and-answer assistant.

Modules:
    settings:    Configuration loading and persistence helpers.
    storage:     Key-value document stores (JSON files on disk, in-memory for tests).
    errors:      Auth failures surfaced to callers, with stable error codes.
    credentials: Credential records, password hashing, and the persisted user list.
    session:     The single current session and its change listeners.
    auth:        Login, signup and logout.
    profile:     Per-user tasks, reminders, saved tips and question history.
    main:        FastAPI application wiring everything together.
"""
