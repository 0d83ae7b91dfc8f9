"""
Conversation flow engine.

A chatbot's flat trigger/response templates are shown to operators as a
directed flow graph. This package holds the graph model, the rules that
turn a template list into a graph and back, and the JSON document format
the editor imports and exports.

The reconciler, which writes graph edits back to the template store,
lives in `flows.reconciler` and is imported from there.
"""
from flows.errors import (
    FlowError, GraphError, DuplicateId, UnknownNode, DuplicateConnection,
    SimulationError, NoStartNode, InvalidState,
    InvalidFormat, StoreError, StoreUnavailable, AuthExpired,
)
from flows.graph import FlowGraph, EditorViewState
from flows.classification import ClassificationPolicy, ClassificationRule, Role, default_policy
from flows.synthesizer import FlowSynthesizer, node_to_template
from flows.serialization import FlowDocumentEditor, export_flow, import_flow
from flows.seeds import default_project_templates, ensure_default_project, starter_flow
