"""
Vision-model analysis of uploaded tests: provider clients, consensus merge,
and the shapes the rest of the app stores and renders.
"""
