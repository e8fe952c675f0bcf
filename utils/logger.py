import logging

_configured = False


def get_logger(name: str) -> logging.Logger:
    """
    모듈 단위 logger를 반환한다.

    Why:
    - worker/api 프로세스가 별도 logging 설정 없이 시작해도
      최초 호출 시 최소 포맷을 한 번만 구성한다.
    """
    global _configured

    if not _configured:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
        _configured = True

    logger = logging.getLogger(name)
    logger.propagate = True
    return logger
