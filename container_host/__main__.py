from container_host import cli

raise SystemExit(cli.main())
