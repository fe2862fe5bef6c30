"""Drug-test clinic backend.

Classification of screening results against a client's medications, lab
confirmation handling, the screening workflow and the technician roster.
"""

__version__ = "0.1.0"
