from __future__ import annotations

from lab_grader.cli import main

raise SystemExit(main())
