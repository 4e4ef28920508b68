from nodepilot.reporter import generate_report


def test_generate_report():
    """Test that the report generation works correctly."""
    snapshot = {
        "initialized": True,
        "current_node": "node1_id",
        "mirror": "",
        "average_latency_ms": 150.0,
        "nodes": [
            {
                "id": "node2_id",
                "name": None,
                "selection_score": 41.5,
                "availability_rate": 0.5,
                "score": 60,
                "geo": None,
                "metrics": {"latency_ms": 200, "bps": 500 * 1024 * 8, "hard_fail": False, "simulated": False},
            },
            {
                "id": "node1_id",
                "name": "remark1",
                "selection_score": 72.25,
                "availability_rate": 1.0,
                "score": 85,
                "geo": {"country": "Japan", "region": "Tokyo"},
                "metrics": {"latency_ms": 100, "bps": 2 * 1024 * 1024 * 8, "hard_fail": False, "simulated": False},
            },
            {
                "id": "node3_id",
                "name": None,
                "selection_score": 10.0,
                "availability_rate": 0.0,
                "score": 0,
                "geo": None,
                "metrics": {"latency_ms": 5000, "bps": 0, "hard_fail": True, "simulated": False},
            },
            {"id": "node4_id", "name": None, "selection_score": 0.0, "metrics": None},
        ],
    }

    report = generate_report(snapshot)

    assert "# Node Health Report" in report
    assert "- **Known Nodes:** 4" in report
    assert "- **Evaluated Nodes:** 3" in report
    assert "- **Healthy Nodes:** 2" in report
    assert "- **Active Node:** node1_id" in report
    assert "- **Mirror:** direct" in report
    assert "- **Average Latency:** 150.00 ms" in report
    assert "| 1 | **remark1** (active) | 72.25 | 100% | Tokyo | [S:85] 2.00MB/s 100ms |" in report
    assert "| 2 | node2_id | 41.50 | 50% | - | [S:60] 500KB/s 200ms |" in report
    assert "| 4 | node4_id | 0.00 | 0% | - | not evaluated |" in report


def test_generate_report_empty():
    report = generate_report({"nodes": [], "current_node": None, "mirror": None})
    assert "- **Known Nodes:** 0" in report
    assert "- **Active Node:** none" in report
    assert "- **Mirror:** not selected" in report
