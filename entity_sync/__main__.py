from entity_sync.cli import main

raise SystemExit(main())
