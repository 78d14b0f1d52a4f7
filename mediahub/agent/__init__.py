"""
MediaHub agent — per-context discovery and control of media sources.

Modules:
    page.py           Page/Element interface the adapters program against
    selenium_page.py  Page implementation over a selenium WebDriver
    scoring.py        candidate ranking
    handles.py        native and virtual source handles
    automation.py     UI-automation virtual sources (strategy cascade)
    profiles.py       per-site selector profiles
    adapter.py        SourceAdapter (one per context)
    link.py           WebSocket link to the coordinator (one per context group)
    host.py           selenium context host entry point (mediahub-agent)
"""
