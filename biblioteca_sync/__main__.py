from biblioteca_sync.entrypoints.cli import main

raise SystemExit(main())
