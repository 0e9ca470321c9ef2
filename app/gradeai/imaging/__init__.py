"""
Image pre-processing for photographed school tests.

- color_separation: split red teacher ink from student handwriting
- preprocessing: enhancement presets, quality check, colour layers
- visual_detection: heuristic evidence (grade crops, correction density, regions)
- pages: shrink/encode pages for vision APIs, PDF rendering
"""
