"""Goal orchestration: analysis, routing, task lifecycle, adaptive retry and supervision."""
