from codebox.core.diagnostics import normalize_diagnostics, parse_diagnostics


def test_strips_workspace_and_container_roots():
    text = (
        "/srv/jobs/abc123/HelloWorld.java:3: error: ';' expected\n"
        "/tmp/job/Util.java:7: warning: [unchecked] unchecked call\n"
    )
    out = normalize_diagnostics(text, ["/srv/jobs/abc123", "/tmp/job"])
    assert out.splitlines() == [
        "HelloWorld.java:3: error: ';' expected",
        "Util.java:7: warning: [unchecked] unchecked call",
    ]


def test_python_frames_become_file_line():
    text = 'Traceback (most recent call last):\n  File "/w/j1/Foo.py", line 4, in <module>\nZeroDivisionError'
    out = normalize_diagnostics(text, ["/w/j1/"])
    assert "Foo.py:4, in <module>" in out


def test_normalize_empty():
    assert normalize_diagnostics("", ["/x"]) == ""


def test_parse_compiler_lines():
    text = (
        "HelloWorld.java:3: error: ';' expected\n"
        "        System.out.println(\"hi\")\n"
        "                                  ^\n"
        "pkg/Util.java:10: warning: deprecated\n"
        "1 error\n"
    )
    diags = parse_diagnostics(text)
    assert [(d.file, d.line, d.severity) for d in diags] == [
        ("HelloWorld.java", 3, "error"),
        ("pkg/Util.java", 10, "warning"),
    ]
    assert diags[0].message == "';' expected"


def test_parse_ignores_runtime_traces():
    assert parse_diagnostics("Exception in thread \"main\"\n\tat Foo.main(Foo.java:5)") == []
