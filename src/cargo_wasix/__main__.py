from cargo_wasix.cli import main

raise SystemExit(main())
