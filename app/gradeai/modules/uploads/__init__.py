"""
Uploads module: multi-page test uploads, analysis status, reports and the
fairness-check / translation helpers built on top of a finished analysis.
"""
