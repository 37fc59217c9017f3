from flask import Flask, Response, request, jsonify, send_file
from flask_cors import CORS
import io
import os
import hmac
import logging
from logging.handlers import RotatingFileHandler
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from collaborators import LoggingNotifier, StaticBilling
from contract_data import ContractData
from docusign_client import DocuSignClient
from documenso_client import DocumensoClient
from errors import ConfigurationError, ContractNotFoundError, ContractServiceError
from pdf_generator import ContractPDFGenerator
from signing_orchestrator import SigningOrchestrator
from store import InMemoryContractStore, InMemoryTemplateStore
from template_resolver import TemplateResolver
from webhook_reconciler import DEFAULT_SECRET_HEADER, WebhookReconciler

app = Flask(__name__)
app.secret_key = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
app.config['RATELIMIT_ENABLED'] = os.environ.get('RATELIMIT_ENABLED', 'true').lower() == 'true'
CORS(app,
     origins=["*"],
     expose_headers=['Content-Disposition'],
     allow_headers=['Content-Type', 'X-API-Key'],
     methods=['GET', 'POST', 'OPTIONS'],
     supports_credentials=True)

# Initialize rate limiter for API endpoints
limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    default_limits=["200 per day", "50 per hour"],
    storage_uri="memory://"
)

# Set up application logging to tmp/logs
logs_dir = os.path.join(os.path.dirname(__file__), 'tmp', 'logs')
try:
    os.makedirs(logs_dir, exist_ok=True)
    handler = RotatingFileHandler(os.path.join(logs_dir, 'backend.log'), maxBytes=2_000_000, backupCount=3)
    handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)s %(levelname)s %(message)s')
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    if not any(isinstance(h, RotatingFileHandler) for h in root_logger.handlers):
        root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)
    app.logger.setLevel(logging.INFO)
except Exception:
    # Fallback to default logger if filesystem not writable
    pass

# Operator routes require X-API-Key when a key is configured
OPERATOR_API_KEY = os.environ.get('OPERATOR_API_KEY', None)
SIGNING_PROVIDER = os.environ.get('SIGNING_PROVIDER', 'documenso').strip().lower()


def is_authenticated_request():
    """Check the operator API key header"""
    if not OPERATOR_API_KEY:
        return True
    api_key = request.headers.get('X-API-Key') or ''
    return hmac.compare_digest(api_key.encode('utf-8'), OPERATOR_API_KEY.encode('utf-8'))


def create_signing_provider(name=SIGNING_PROVIDER):
    if name == 'documenso':
        return DocumensoClient()
    if name == 'docusign':
        return DocuSignClient()
    raise ConfigurationError(f"Unknown signing provider '{name}'")


def error_response(e):
    if e.http_status >= 500:
        app.logger.error('%s: %s', type(e).__name__, e.message)
    else:
        app.logger.warning('%s: %s', type(e).__name__, e.message)
    return jsonify(e.to_dict()), e.http_status


contract_store = InMemoryContractStore()
template_store = InMemoryTemplateStore()
generator = ContractPDFGenerator(TemplateResolver(template_store))
billing = StaticBilling()
notifier = LoggingNotifier()
signing_provider = create_signing_provider()
orchestrator = SigningOrchestrator(
    contract_store,
    generator,
    signing_provider,
    billing=billing,
    notifier=notifier,
    redirect_url=os.environ.get('SIGNING_REDIRECT_URL') or None,
)
reconciler = WebhookReconciler(
    contract_store,
    notifier,
    secret=os.environ.get('SIGNING_WEBHOOK_SECRET') or None,
    header=os.environ.get('SIGNING_WEBHOOK_HEADER', DEFAULT_SECRET_HEADER),
)


@app.route('/api/health', methods=['GET'])
@limiter.exempt
def health():
    return jsonify({'status': 'ok', 'provider': SIGNING_PROVIDER}), 200


@app.route('/api/contracts/<contract_id>/send', methods=['POST'])
@limiter.limit("10 per hour")
def send_contract(contract_id):
    if not is_authenticated_request():
        app.logger.warning('Unauthorized send request')
        return jsonify({"error": "Authentication required"}), 401

    try:
        data = request.get_json(silent=True) or {}
        app.logger.info(f'Send request: contract={contract_id} stage={data.get("stage")}')
        result = orchestrator.send(
            contract_id,
            stage=data.get('stage'),
            kind=data.get('type') or data.get('kind'),
            overrides=data,
            actor=request.headers.get('X-User-Id'),
        )
        response = result.to_dict()
        response['success'] = True
        response['message'] = 'Contract sent for signature successfully'
        if not result.persisted:
            response['warning'] = 'Document was sent but the contract could not be updated'
        return jsonify(response), 200

    except ContractServiceError as e:
        return error_response(e)
    except ValueError as e:
        app.logger.error(f'Send validation error: {e}')
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        app.logger.exception(f'Contract send failed: {e}')
        return jsonify({"error": f"Failed to send contract for signature: {str(e)}"}), 500


@app.route('/api/contracts/<contract_id>/resend', methods=['POST'])
@limiter.limit("10 per hour")
def resend_contract(contract_id):
    if not is_authenticated_request():
        app.logger.warning('Unauthorized resend request')
        return jsonify({"error": "Authentication required"}), 401

    try:
        result = orchestrator.resend(contract_id, actor=request.headers.get('X-User-Id'))
        result['success'] = True
        return jsonify(result), 200
    except ContractServiceError as e:
        return error_response(e)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        app.logger.exception(f'Contract resend failed: {e}')
        return jsonify({"error": f"Failed to resend contract: {str(e)}"}), 500


@app.route('/api/contracts/<contract_id>/preview', methods=['GET'])
def preview_contract(contract_id):
    if not is_authenticated_request():
        app.logger.warning('Unauthorized preview request')
        return jsonify({"error": "Authentication required"}), 401

    try:
        contract = contract_store.get(contract_id)
        if contract is None:
            raise ContractNotFoundError("Contract not found", contract_id=contract_id)

        kind = request.args.get('type') or contract.custom_fields.get('document_kind')
        data = ContractData.from_contract(contract)
        options = {
            'company_template_id': contract.custom_fields.get('company_template_id'),
            'signature_layout': contract.custom_fields.get('signature_layout'),
        }

        if request.args.get('format') == 'html':
            html_text = generator.preview_html(kind, data, **options)
            return Response(html_text, mimetype='text/html')

        pdf_bytes = None
        if request.args.get('signed', '').lower() == 'true':
            try:
                pdf_bytes = orchestrator.signed_pdf(contract_id)
                app.logger.info(f'Serving signed PDF for contract {contract_id}')
            except Exception as e:
                app.logger.warning(f'Signed PDF unavailable for contract {contract_id}, rendering instead: {e}')

        if pdf_bytes is None:
            pdf_bytes = generator.generate(kind, data, **options).pdf_bytes

        return send_file(
            io.BytesIO(pdf_bytes),
            mimetype='application/pdf',
            as_attachment=False,
            download_name=f'contract-{contract_id}.pdf'
        )

    except ContractServiceError as e:
        return error_response(e)
    except ValueError as e:
        app.logger.error(f'Preview validation error: {e}')
        return jsonify({"error": f"Invalid input: {str(e)}"}), 400
    except Exception as e:
        app.logger.exception(f'Preview failed: {e}')
        return jsonify({"error": f"PDF generation failed: {str(e)}"}), 500


@app.route('/api/contracts/signing-status', methods=['GET'])
def signing_status():
    contract_id = request.args.get('contractId')
    if not contract_id:
        return jsonify({"error": "contractId is required"}), 400
    try:
        return jsonify({'contract': orchestrator.signing_status(contract_id)}), 200
    except ContractServiceError as e:
        return error_response(e)
    except Exception as e:
        app.logger.exception(f'Signing status lookup failed: {e}')
        return jsonify({"error": "Internal server error"}), 500


@app.route('/api/webhooks/signing', methods=['POST'])
@limiter.exempt
def signing_webhook():
    try:
        reconciler.authenticate(request.headers.get(reconciler.header), request.remote_addr)
        result = reconciler.process(request.get_json(silent=True))
        return jsonify(result), 200
    except ContractServiceError as e:
        return error_response(e)
    except Exception as e:
        app.logger.exception(f'Webhook processing error: {e}')
        return jsonify({"error": "Internal server error"}), 500


@app.route('/api/webhooks/signing', methods=['GET'])
@limiter.exempt
def signing_webhook_check():
    return jsonify({'status': 'ok', 'service': 'signing-webhook'}), 200
