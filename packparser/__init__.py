"""
Package Parser
==============
Import pipeline that turns loosely structured quiz tournament documents
(.docx / .pdf) into a package → tour → [block] → question tree.

Architecture:
    - Document Extractor: ordered text fragments + embedded media
    - Pattern Classifier: swappable table of tour/block/question/label matchers
    - Structural Parser: state machine building the draft tree, with a
      confidence score and review warnings
    - Normalizer: optional language-model fallback for low-confidence parses
    - Renumbering Engine: gapless ordering and display numbers
    - Import Scheduler: bounded FIFO worker pool with retry and timeout

Version: 1.0.0
"""

__version__ = "1.0.0"
