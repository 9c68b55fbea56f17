"""Notification sink backed by Amazon SES."""

from mypy_boto3_ses import SESClient


class Notifier:
    """Sends plain-text email from a single verified sender."""

    def __init__(self, ses_client: SESClient, sender: str):
        self._ses = ses_client
        self._sender = sender

    def send(self, recipient: str, subject: str, body: str) -> str:
        """
        Sends one message and returns the SES message id.

        Raises:
            botocore.exceptions.ClientError: If SES rejects the message.
        """
        response = self._ses.send_email(
            Source=self._sender,
            Destination={"ToAddresses": [recipient]},
            Message={
                "Subject": {"Charset": "UTF-8", "Data": subject},
                "Body": {"Text": {"Charset": "UTF-8", "Data": body}},
            },
        )
        return response["MessageId"]
