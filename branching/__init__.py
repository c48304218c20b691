"""Conversation branching core for TutorTree.

Turns the append-only chat transcript into a tree where a click on a list
item of an assistant turn starts a new branch rooted at that turn.
"""

from .controller import DEFAULT_TITLE, ConversationController, SessionClosedError
from .graph import GraphState, TreeNode, fold, path_to
from .intent import BranchIntentTracker, PendingBranch
from .messages import Message, MessageStore, extract_list_items
from .serialize import rehydrate, serialize_tree
from .stats import overall_stats, session_stats
from .sync import SessionSync, derive_title
