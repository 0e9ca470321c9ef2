"""
Children module: parents register the children whose tests they upload.
"""
