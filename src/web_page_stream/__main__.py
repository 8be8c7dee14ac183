from web_page_stream.cli import main

raise SystemExit(main())
