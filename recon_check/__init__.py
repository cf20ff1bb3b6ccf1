"""recon-check: streaming reconciliation between an IDM directory and a profile store.

Pages through every managed user in the Directory, resolves each one against
the Profile Store, and classifies discrepancies into a fixed taxonomy.  Runs
are resumable from checkpoints, stream their results as server-sent events,
and leave a downloadable CSV artifact behind.
"""

__version__ = "0.3.1"
