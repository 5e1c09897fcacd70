"""
Example usage of Visual Consensus (programmatic API).

Builds a synthetic screen, runs every built-in strategy over it and
prints the fused elements. Pass an image path to analyse a screenshot.
"""

import sys

import cv2
import numpy as np

from visual_consensus import DetectionContext, ElementKind, configure_logging, create_orchestrator


def synthetic_screen() -> np.ndarray:
    screen = np.full((480, 640, 3), 240, dtype=np.uint8)
    cv2.rectangle(screen, (40, 40), (200, 80), (180, 120, 40), thickness=-1)
    cv2.rectangle(screen, (40, 120), (400, 150), (255, 255, 255), thickness=-1)
    cv2.rectangle(screen, (40, 120), (400, 150), (90, 90, 90), thickness=1)
    cv2.putText(screen, "Submit", (70, 68), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (255, 255, 255), 2)
    return screen


def main():
    print("Visual Consensus - Example")
    print("=" * 50)

    configure_logging()

    if len(sys.argv) > 1:
        screen = cv2.imread(sys.argv[1])
        if screen is None:
            print(f"Could not read {sys.argv[1]}")
            return
    else:
        screen = synthetic_screen()

    orchestrator = create_orchestrator()
    print(f"\nStrategies: {[s.strategy_id for s in orchestrator.registered_strategies()]}")

    # Search for the button we drew, in addition to model/synthetic output
    template = screen[40:81, 40:201].copy()
    context = DetectionContext(template=template, template_kind=ElementKind.BUTTON)

    result = orchestrator.detect_sync(screen, context)
    print(f"\nFound {len(result.elements)} elements (success={result.success})")
    for elem in result.elements[:10]:
        sources = elem.properties.get("consensus.sources", (elem.strategy_id,))
        print(
            f"   - {elem.kind.value:<9} {elem.confidence:.2f} at {elem.bounds.center} "
            f"from {', '.join(sources)}"
        )

    print("\nDiagnostics:")
    for diag in result.diagnostics:
        status = "ok" if diag.success else f"failed ({diag.reason})"
        print(f"   - {diag.strategy_id}: {diag.duration_ms:.1f} ms {status}")

    # Same image again is served from the cache
    if orchestrator.cache is not None:
        again = orchestrator.detect_sync(screen, context)
        print(f"\nSecond call cache hit: {again.cache_hit}")
        print(f"Cache: {orchestrator.cache_stats().to_dict()}")

    print("\nDone!")


if __name__ == "__main__":
    main()
