"""Storage module for TutorTree application.

This module handles all data persistence operations including session records,
the append-only message log, the stored conversation tree, and sharing.
"""

from .models import (
    SessionStore,
    flatten_tree,
    get_store,
    nest_tree,
    parse_messages,
)
