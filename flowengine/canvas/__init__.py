"""Canvas and card workflow compilers."""

from .cards import CardCompiler, CardWorkflow, compile_cards
from .compiler import CATEGORY_STEP_TYPES, CanvasCompiler, compile_canvas, step_type_for_category
from .models import Canvas, CanvasConnection, CanvasNode, CanvasPort
from .validator import validate_canvas

__all__ = [
    "CATEGORY_STEP_TYPES",
    "Canvas",
    "CanvasCompiler",
    "CanvasConnection",
    "CanvasNode",
    "CanvasPort",
    "CardCompiler",
    "CardWorkflow",
    "compile_canvas",
    "compile_cards",
    "step_type_for_category",
    "validate_canvas",
]
