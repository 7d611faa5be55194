"""Invoice intake: from scanned or born-digital invoices to approved records.

Documents are rasterized and deskewed, preprocessed into ranked variants,
split into zones, read by budgeted OCR passes, turned into field
candidates, resolved into calibrated values with full artifact lineage,
validated against configurable rules, and placed in a review queue whose
only exit to downstream systems is the approval gate.
"""
