from flask import jsonify
import logging

logger = logging.getLogger(__name__)


def success_response(message, data=None, status=200):
    body = {
        'success': True,
        'message': message
    }
    if data is not None:
        body['data'] = data
    return jsonify(body), status


def error_response(message, error=None, status=400):
    body = {
        'success': False,
        'message': message
    }
    if error is not None:
        body['error'] = error
    return jsonify(body), status


def validation_error_response(errors):
    """marshmallow 的欄位錯誤原樣回給前端 (400)"""
    return error_response('Validation failed', errors, 400)


def server_error_response(error, context='Server error'):
    """
    處理 500 錯誤

    完整的 stack trace 只寫到 log,前端只看到通用訊息
    """
    logger.error(f"{context}: {str(error)}", exc_info=error)
    return error_response('Internal server error', 'Something went wrong', 500)
